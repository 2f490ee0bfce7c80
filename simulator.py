# simulator.py
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from parameters import HazardType, ParameterStore, Parameters, MITIGATION_IDS
from mitigations import (
    HAZARD_MITIGATIONS,
    MITIGATION_NAMES,
    effective_probability,
    mitigation_catalogue,
    portfolio_cost,
    savings_roi,
)
from fault_tree import (
    GateNode,
    ImportanceRecord,
    MinimalCutSet,
    build_fault_tree,
    evaluate,
    importance_measures,
    minimal_cut_sets,
)
from costs import BASE_COSTS, CostTotals, expected_costs
from engine import Histogram, MonteCarloSampler, SamplerConfig, Statistics
from petri_net import LiveSimulation

__all__ = ["RiskSimulator", "isolation_table", "marginal_table", "risk_mapping_table", "RISK_EVENTS"]

log = logging.getLogger(__name__)


def _now_iso() -> str:
    return pd.Timestamp.now(tz="UTC").isoformat()

# ---------------------------------------------------------------------
# Mitigation what-if tables
# ---------------------------------------------------------------------

def _scenario(store: ParameterStore, active: Iterable[str], horizon_days: int,
              mitigate_frequency: bool) -> Dict[str, float]:
    params = store.snapshot()
    configs = store.mitigation_configs()
    p_top = evaluate(build_fault_tree(params, active, configs))
    cost = expected_costs(params, active, configs, horizon_days, mitigate_frequency)["mitigated"]
    return {"p_top": p_top, "cost": cost}


def isolation_table(store: ParameterStore, horizon_days: int = 30,
                    mitigate_frequency: bool = False) -> pd.DataFrame:
    """Each mitigation on its own (all others off) against no mitigation."""
    configs = store.mitigation_configs()
    base = _scenario(store, (), horizon_days, mitigate_frequency)
    rows = []
    for mid in MITIGATION_IDS:
        alone = _scenario(store, (mid,), horizon_days, mitigate_frequency)
        d_cost = base["cost"] - alone["cost"]
        cost = configs[mid].cost
        rows.append({
            "Mitigation": MITIGATION_NAMES[mid],
            "ΔP(top)": base["p_top"] - alone["p_top"],
            "ΔExpected cost ($/horizon)": d_cost,
            "Cost ($)": cost,
            "Benefit per $": (d_cost / cost) if cost > 0 else np.nan,
            "ROI %": ((d_cost - cost) / cost * 100) if cost > 0 else np.nan,
        })
    return pd.DataFrame(rows).sort_values("Benefit per $", ascending=False).reset_index(drop=True)


def marginal_table(store: ParameterStore, horizon_days: int = 30,
                   mitigate_frequency: bool = False) -> pd.DataFrame:
    """Adding one more mitigation to the current bundle; empty if all are on."""
    configs = store.mitigation_configs()
    bundle = store.active_mitigations()
    current = _scenario(store, bundle, horizon_days, mitigate_frequency)
    rows = []
    for mid in MITIGATION_IDS:
        if mid in bundle:
            continue
        plus = _scenario(store, bundle | {mid}, horizon_days, mitigate_frequency)
        d_cost = current["cost"] - plus["cost"]
        cost = configs[mid].cost
        rows.append({
            "Add": MITIGATION_NAMES[mid],
            "ΔP(top) from bundle": current["p_top"] - plus["p_top"],
            "ΔExpected cost from bundle ($/horizon)": d_cost,
            "Incremental cost ($)": cost,
            "Marginal ROI %": ((d_cost - cost) / cost * 100) if cost > 0 else np.nan,
        })
    if not rows:
        return pd.DataFrame(columns=["Add", "ΔP(top) from bundle", "ΔExpected cost from bundle ($/horizon)",
                                     "Incremental cost ($)", "Marginal ROI %"])
    return pd.DataFrame(rows).sort_values("Marginal ROI %", ascending=False).reset_index(drop=True)

# ---------------------------------------------------------------------
# Risk mapping
# ---------------------------------------------------------------------

# hazard -> (risk event, fault-tree event, Petri-net transition)
RISK_EVENTS: Dict[HazardType, Tuple[str, str, str]] = {
    HazardType.RANSOMWARE: ("Ransomware Attack", "BE1", "T1 (FTA: Ransomware)"),
    HazardType.EQUIPMENT: ("Equipment Failure", "BE3", "T2 (FTA: Equipment)"),
    HazardType.SUPPLIER: ("Supplier Disruption", "BE5", "T3 (FTA: Supplier)"),
}


def risk_mapping_table(store: ParameterStore) -> pd.DataFrame:
    """One row per hazard linking the fault tree, the live net and its per-event cost."""
    params = store.snapshot()
    active = store.active_mitigations()
    configs = store.mitigation_configs()
    rows = []
    for hazard, (event, fta_id, transition) in RISK_EVENTS.items():
        base = params.probability(hazard)
        rows.append({
            "Risk event": event,
            "FTA id": fta_id,
            "Petri transition": transition,
            "Base P": base,
            "Effective P": effective_probability(base, hazard, active, configs),
            "Mitigations": ", ".join(MITIGATION_NAMES[m] for m in HAZARD_MITIGATIONS[hazard]),
            "Cost impact ($)": BASE_COSTS[hazard] * params.cost_multiplier,
        })
    return pd.DataFrame(rows)

# ---------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------

class RiskSimulator:
    """
    One simulator session: the shared parameter/mitigation state plus the live
    run and the Monte Carlo sampler that read it. This is the surface the
    presentation layer talks to.
    """

    def __init__(
        self,
        store: Optional[ParameterStore] = None,
        sampler_config: Optional[SamplerConfig] = None,
        seed: Optional[int] = None,
    ):
        self.store = store or ParameterStore()
        self.sampler = MonteCarloSampler(sampler_config)
        self.live = LiveSimulation(self.store, seed=seed)

    # --- parameters & mitigations ---
    def get_parameters(self) -> Parameters:
        return self.store.snapshot()

    def set_parameter(self, name: str, value: Any) -> Parameters:
        return self.store.set_parameter(name, value)

    def get_active_mitigations(self) -> FrozenSet[str]:
        return self.store.active_mitigations()

    def toggle_mitigation(self, mitigation_id: str) -> bool:
        state = self.store.toggle_mitigation(mitigation_id)
        self.live.sync_mitigation_places()
        return state

    # --- fault tree ---
    def compute_fault_tree(self) -> GateNode:
        return build_fault_tree(self.store.snapshot(), self.store.active_mitigations(),
                                self.store.mitigation_configs())

    def compute_importance_measures(self) -> List[ImportanceRecord]:
        return importance_measures(self.compute_fault_tree())

    def compute_minimal_cut_sets(self) -> List[MinimalCutSet]:
        return minimal_cut_sets(self.compute_fault_tree())

    # --- Monte Carlo ---
    async def run_monte_carlo(
        self,
        iterations: Optional[int] = None,
        on_progress: Optional[Callable[[float], None]] = None,
        cancel_flag: Optional[asyncio.Event] = None,
    ) -> Statistics:
        return await self.sampler.run(
            self.store.snapshot(),
            self.store.active_mitigations(),
            self.store.mitigation_configs(),
            iterations=iterations,
            on_progress=on_progress,
            cancel_flag=cancel_flag,
        )

    def cancel_monte_carlo(self) -> None:
        self.sampler.cancel()

    def monte_carlo_histogram(self, key: str = "integrated", bins: Optional[int] = None) -> Optional[Histogram]:
        return self.sampler.histogram(key, bins)

    def export_monte_carlo(self) -> Optional[Dict[str, Any]]:
        """Last run with its statistics and raw series, or None before any run."""
        results, stats = self.sampler.results, self.sampler.statistics
        if results is None or stats is None:
            return None
        return {
            "metadata": {
                "timestamp": _now_iso(),
                "iterations": stats.iterations,
                "timeHorizon": self.sampler.config.horizon_days,
            },
            "parameters": self.store.snapshot().to_json_dict(),
            "activeMitigations": [m for m in MITIGATION_IDS if m in self.store.active_mitigations()],
            "statistics": stats.to_json_dict(),
            "rawData": results.to_json_dict(),
        }

    # --- live run ---
    def run_live(self, days: Optional[int] = None) -> CostTotals:
        return self.live.run(days)

    def step_live(self, u: Optional[float] = None):
        return self.live.step(u)

    def reset(self) -> None:
        """Clear the live run and the last Monte Carlo results."""
        self.live.reset()
        self.sampler.reset()

    def comparison_percent(self) -> float:
        return self.live.comparison_percent()

    # --- economics ---
    def portfolio_cost(self) -> float:
        return portfolio_cost(self.store.active_mitigations(), self.store.mitigation_configs())

    def savings_roi(self) -> float:
        return savings_roi(self.live.totals.savings, self.portfolio_cost())

    def mitigation_catalogue(self) -> pd.DataFrame:
        return mitigation_catalogue(self.store.active_mitigations(), self.store.mitigation_configs())

    def mitigation_isolation(self) -> pd.DataFrame:
        cfg = self.sampler.config
        return isolation_table(self.store, cfg.horizon_days, cfg.mitigate_frequency)

    def marginal_mitigations(self) -> pd.DataFrame:
        cfg = self.sampler.config
        return marginal_table(self.store, cfg.horizon_days, cfg.mitigate_frequency)

    def risk_mapping(self) -> pd.DataFrame:
        return risk_mapping_table(self.store)

    # --- export ---
    def export_snapshot(self) -> Dict[str, Any]:
        return {
            "parameters": self.store.snapshot().to_json_dict(),
            "results": self.live.results(),
            "timestamp": _now_iso(),
        }

    def export_snapshot_json(self) -> str:
        return json.dumps(self.export_snapshot(), indent=2)

    def export_config(self) -> Dict[str, Any]:
        return self.store.to_dict()
