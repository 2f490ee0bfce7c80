## mitigations.py
from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import pandas as pd

from parameters import BufferCounter, HazardType, MitigationConfig, MITIGATION_IDS, config_for

__all__ = [
    "HAZARD_MITIGATIONS",
    "MITIGATION_NAMES",
    "MITIGATION_TARGETS",
    "BufferCounter",
    "reduction_factor",
    "effective_probability",
    "portfolio_cost",
    "savings_roi",
    "mitigation_catalogue",
]

# ---------------------------
# Tunable effect tables
# ---------------------------

# Applicable mitigations per hazard, in application order.
HAZARD_MITIGATIONS: Dict[HazardType, Tuple[str, ...]] = {
    HazardType.RANSOMWARE: ("backup", "firewall"),
    HazardType.EQUIPMENT: ("maintenance", "redundancy"),
    HazardType.SUPPLIER: ("dual", "buffer"),
}

MITIGATION_NAMES: Dict[str, str] = {
    "backup": "Automated Backup",
    "firewall": "Advanced Firewall",
    "buffer": "Buffer Inventory",
    "dual": "Dual Sourcing",
    "maintenance": "Predictive Maintenance",
    "redundancy": "Equipment Redundancy",
}

MITIGATION_TARGETS: Dict[str, str] = {
    "backup": "Ransomware",
    "firewall": "Ransomware + IT-OT",
    "buffer": "Supplier + Logistics",
    "dual": "Supplier Disruption",
    "maintenance": "Equipment + Process",
    "redundancy": "Equipment Failure",
}

# ---------------------------
# Resolver
# ---------------------------

def reduction_factor(
    hazard: HazardType,
    active: Iterable[str],
    configs: Mapping[str, MitigationConfig],
    buffer: Optional[BufferCounter] = None,
    consume: bool = True,
) -> float:
    """
    Multiplicative survival factor in [0, 1] for `hazard` under the active set.

    With `buffer=None` the buffer mitigation is unconstrained (steady-state view
    used by the fault tree). With a counter it only applies while days remain,
    and each application consumes one day unless `consume` is False.
    """
    active = set(active)
    mult = 1.0
    for mid in HAZARD_MITIGATIONS[HazardType(hazard)]:
        if mid not in active:
            continue
        if mid == "buffer" and buffer is not None:
            if not buffer.available():
                continue
            if consume:
                buffer.consume()
        mult *= 1.0 - config_for(configs, mid).reduction(hazard)
    return mult


def effective_probability(
    base: float,
    hazard: HazardType,
    active: Iterable[str],
    configs: Mapping[str, MitigationConfig],
    buffer: Optional[BufferCounter] = None,
    consume: bool = True,
) -> float:
    """Base probability after the applicable mitigations; always in [0, base]."""
    return base * reduction_factor(hazard, active, configs, buffer=buffer, consume=consume)

# ---------------------------
# Portfolio economics
# ---------------------------

def portfolio_cost(active: Iterable[str], configs: Mapping[str, MitigationConfig]) -> float:
    return float(sum(config_for(configs, mid).cost for mid in set(active)))


def savings_roi(savings: float, cost: float) -> float:
    """Savings as a percent of portfolio cost (0 when nothing was spent)."""
    if cost <= 0:
        return 0.0
    return savings / cost * 100.0


def mitigation_catalogue(
    active: Iterable[str],
    configs: Mapping[str, MitigationConfig],
) -> pd.DataFrame:
    active = set(active)
    rows: List[dict] = []
    for mid in MITIGATION_IDS:
        cfg = config_for(configs, mid)
        hazards = [h for h, mids in HAZARD_MITIGATIONS.items() if mid in mids]
        rows.append({
            "Mitigation": mid,
            "Name": MITIGATION_NAMES[mid],
            "Targets": MITIGATION_TARGETS[mid],
            "Hazard": ", ".join(h.value for h in hazards),
            "Reduction": max((cfg.reduction(h) for h in hazards), default=0.0),
            "Cost ($)": cfg.cost,
            "Active": mid in active,
        })
    return pd.DataFrame(rows)
