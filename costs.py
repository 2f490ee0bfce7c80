# costs.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

from parameters import HazardType, MitigationConfig, Parameters
from mitigations import BufferCounter, reduction_factor

__all__ = [
    "BASE_COSTS",
    "CASCADE_MULTIPLIERS",
    "CASCADE_INCREMENTS",
    "EventCost",
    "CostTotals",
    "CostAccumulator",
    "event_cost",
    "expected_costs",
    "percent_change",
]

log = logging.getLogger(__name__)

# ---------------------------
# Cost tables (one canonical table for the live run and the sampler)
# ---------------------------

BASE_COSTS: Dict[HazardType, float] = {
    HazardType.RANSOMWARE: 50000.0,
    HazardType.EQUIPMENT: 30000.0,
    HazardType.SUPPLIER: 20000.0,
}

CASCADE_MULTIPLIERS: Dict[HazardType, float] = {
    HazardType.RANSOMWARE: 2.0,
    HazardType.EQUIPMENT: 1.5,
    HazardType.SUPPLIER: 1.75,
}

# downstream stages hit per event on the cascade-aware tracks
CASCADE_INCREMENTS: Dict[HazardType, int] = {
    HazardType.RANSOMWARE: 2,
    HazardType.EQUIPMENT: 1,
    HazardType.SUPPLIER: 0,
}


def percent_change(new: float, old: float) -> float:
    """(new - old) / old * 100, or 0 when `old` is 0."""
    if old == 0:
        return 0.0
    return (new - old) / old * 100.0

# ---------------------------
# Per-event costs
# ---------------------------

@dataclass(frozen=True)
class EventCost:
    hazard: HazardType
    standard: float        # base cost only
    integrated: float      # base x cascade, no mitigation
    mitigated: float       # base x mitigation chain x cascade
    savings: float         # integrated - mitigated, 0 with no mitigation active
    reduction: float       # survival factor the resolver returned
    cascades: int


def event_cost(
    hazard: HazardType,
    params: Parameters,
    active: Iterable[str],
    configs: Mapping[str, MitigationConfig],
    buffer: Optional[BufferCounter] = None,
) -> EventCost:
    """
    Cost of one realisation of `hazard` on the three tracks.

    The resolver is consulted exactly once, so a supplier event consumes at
    most one buffer day.
    """
    hazard = HazardType(hazard)
    active = set(active)
    cm = params.cost_multiplier
    base = BASE_COSTS[hazard]
    cascade = CASCADE_MULTIPLIERS[hazard]

    factor = reduction_factor(hazard, active, configs, buffer=buffer)
    integrated = base * cascade * cm
    if active:
        mitigated = base * factor * cascade * cm
        savings = integrated - mitigated
    else:
        mitigated = integrated
        savings = 0.0

    return EventCost(
        hazard=hazard,
        standard=base * cm,
        integrated=integrated,
        mitigated=mitigated,
        savings=savings,
        reduction=factor,
        cascades=CASCADE_INCREMENTS[hazard],
    )


def expected_costs(
    params: Parameters,
    active: Iterable[str],
    configs: Mapping[str, MitigationConfig],
    horizon_days: int = 30,
    mitigate_frequency: bool = False,
) -> Dict[str, float]:
    """
    Analytic expected cost per track over `horizon_days`, treating each day and
    hazard as an independent Bernoulli draw (the sampler's model, buffer
    assumed available).
    """
    active = set(active)
    out = {"standard": 0.0, "integrated": 0.0, "mitigated": 0.0}
    for hazard in HazardType:
        p = params.probability(hazard)
        factor = reduction_factor(hazard, active, configs) if active else 1.0
        base = BASE_COSTS[hazard] * params.cost_multiplier
        cascade = CASCADE_MULTIPLIERS[hazard]
        p_mit = p * factor if mitigate_frequency else p
        out["standard"] += horizon_days * p * base
        out["integrated"] += horizon_days * p * base * cascade
        out["mitigated"] += horizon_days * p_mit * base * factor * cascade
    return out

# ---------------------------
# Running totals
# ---------------------------

@dataclass
class CostTotals:
    standard: float = 0.0
    integrated: float = 0.0
    mitigated: float = 0.0
    savings: float = 0.0
    cascades: int = 0

    def add(self, ev: EventCost) -> None:
        self.standard += ev.standard
        self.integrated += ev.integrated
        self.mitigated += ev.mitigated
        self.savings += ev.savings
        self.cascades += ev.cascades

    def to_dict(self) -> Dict[str, float]:
        return dict(self.__dict__)


@dataclass
class CostAccumulator:
    """
    Standard / integrated / mitigated running totals plus savings for one
    simulation run. Totals only grow until `reset()`.
    """
    totals: CostTotals = field(default_factory=CostTotals)
    events: List[EventCost] = field(default_factory=list)

    def record(
        self,
        hazard: HazardType,
        params: Parameters,
        active: Iterable[str],
        configs: Mapping[str, MitigationConfig],
        buffer: Optional[BufferCounter] = None,
    ) -> EventCost:
        ev = event_cost(hazard, params, active, configs, buffer=buffer)
        self.totals.add(ev)
        self.events.append(ev)
        log.debug("recorded %s event: standard=%.2f integrated=%.2f mitigated=%.2f",
                  ev.hazard.value, ev.standard, ev.integrated, ev.mitigated)
        return ev

    def reset(self) -> None:
        self.totals = CostTotals()
        self.events = []

    def comparison_percent(self) -> float:
        """How far the standard model under-states the cascade-aware cost."""
        return percent_change(self.totals.integrated, self.totals.standard)
