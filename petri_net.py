# petri_net.py
from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from parameters import HazardType, ParameterStore, MITIGATION_IDS
from costs import CostAccumulator, CostTotals, EventCost

__all__ = [
    "Place",
    "PetriNet",
    "standard_net",
    "integrated_net",
    "mitigated_net",
    "LiveSimulation",
    "DAY_MS",
]

log = logging.getLogger(__name__)

DAY_MS = 1000          # one simulated day on the cascade-delay clock
HORIZON_DAYS = 30

# ---------------------------------------------------------------------
# Nets
# ---------------------------------------------------------------------

@dataclass
class Place:
    id: str
    name: str
    kind: str          # normal / disrupted / recovery / cyber / mitigation
    tokens: int = 0


# stage -> (normal, disrupted, recovery)
STAGES: Dict[str, Tuple[str, str, str]] = {
    "Mfg": ("P1", "P2", "P3"),
    "Dist": ("P4", "P5", "P6"),
    "Cust": ("P7", "P8", "P9"),
}

# cyber place feeding a stage, integrated/mitigated nets only
CYBER_FEED: Dict[str, str] = {"Mfg": "P10", "Dist": "P11", "Cust": "P12"}

MITIGATION_PLACES: Dict[str, str] = {
    "backup": "M1", "firewall": "M2", "buffer": "M3",
    "dual": "M4", "maintenance": "M5", "redundancy": "M6",
}


class PetriNet:
    """Token marking plus a log of fired transitions."""

    def __init__(self, name: str, places: List[Place]):
        self.name = name
        self.places: Dict[str, Place] = {p.id: p for p in places}
        self._initial = {p.id: p.tokens for p in places}
        self.fired: List[Tuple[int, str]] = []

    def tokens(self, place_id: str) -> int:
        return self.places[place_id].tokens

    def has(self, place_id: str) -> bool:
        return place_id in self.places

    def move(self, src: str, dst: str, day: int = 0, label: str = "") -> bool:
        """Fire src -> dst if src is marked; returns whether it fired."""
        if not (self.has(src) and self.has(dst)) or self.places[src].tokens < 1:
            return False
        self.places[src].tokens -= 1
        self.places[dst].tokens += 1
        self.fired.append((day, label or f"{src}->{dst}"))
        return True

    def set_tokens(self, place_id: str, n: int) -> None:
        self.places[place_id].tokens = n

    def marking(self) -> Dict[str, int]:
        return {pid: p.tokens for pid, p in self.places.items()}

    def reset(self) -> None:
        for pid, n in self._initial.items():
            self.places[pid].tokens = n
        self.fired = []

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([
            {"Place": p.id, "Name": p.name, "Kind": p.kind, "Tokens": p.tokens}
            for p in self.places.values()
        ])


def _stage_places() -> List[Place]:
    names = {"Mfg": ("Mfg Normal", "Mfg Disrupted", "Mfg Recovery"),
             "Dist": ("Dist Normal", "Dist Disrupted", "Dist Recovery"),
             "Cust": ("Cust Normal", "Cust Impacted", "Cust Recovery")}
    places: List[Place] = []
    for stage, (normal, disrupted, recovery) in STAGES.items():
        n1, n2, n3 = names[stage]
        places += [Place(normal, n1, "normal", 1),
                   Place(disrupted, n2, "disrupted", 0),
                   Place(recovery, n3, "recovery", 0)]
    return places


def _cyber_places() -> List[Place]:
    return [Place("P10", "IT Systems", "cyber", 1),
            Place("P11", "Production Sys", "cyber", 1),
            Place("P12", "Logistics Sys", "cyber", 1)]


def standard_net() -> PetriNet:
    return PetriNet("standard", _stage_places())


def integrated_net() -> PetriNet:
    return PetriNet("integrated", _stage_places() + _cyber_places())


def mitigated_net() -> PetriNet:
    labels = {"backup": "Backup", "firewall": "Firewall", "buffer": "Buffer",
              "dual": "Dual Src", "maintenance": "Maint.", "redundancy": "Redund."}
    extra = [Place(MITIGATION_PLACES[m], labels[m], "mitigation", 0) for m in MITIGATION_IDS]
    return PetriNet("mitigated", _stage_places() + _cyber_places() + extra)

# ---------------------------------------------------------------------
# Live run
# ---------------------------------------------------------------------

@dataclass(order=True)
class _Scheduled:
    at_ms: int
    seq: int
    stage: str = field(compare=False)


class LiveSimulation:
    """
    Day-by-day token simulation of the three nets against one ParameterStore.

    Each day draws one uniform value and fires at most one hazard, chosen by
    cumulative thresholds in the order ransomware, equipment, supplier.
    Cascades to downstream stages are scheduled `cascade_delay_ms` apart on a
    clock where one day is DAY_MS.
    """

    def __init__(self, store: ParameterStore, seed: Optional[int] = None,
                 horizon_days: int = HORIZON_DAYS):
        self.store = store
        self.horizon_days = horizon_days
        self.rng = np.random.default_rng(seed)
        self.standard = standard_net()
        self.integrated = integrated_net()
        self.mitigated = mitigated_net()
        self.accumulator = CostAccumulator()
        self.day = 0
        self.current_fta_probability = 0.0
        self.events: List[Tuple[int, HazardType]] = []
        self._pending: List[_Scheduled] = []
        self._seq = 0
        self._disrupted_since: Dict[Tuple[str, str], int] = {}
        self.sync_mitigation_places()

    # --- state views ---
    @property
    def totals(self) -> CostTotals:
        return self.accumulator.totals

    @property
    def finished(self) -> bool:
        return self.day >= self.horizon_days

    def results(self) -> Dict[str, float]:
        t = self.totals
        return {
            "cascades": t.cascades,
            "standardCost": t.standard,
            "integratedCost": t.integrated,
            "ftaProbability": self.current_fta_probability,
        }

    def comparison_percent(self) -> float:
        return self.accumulator.comparison_percent()

    def sync_mitigation_places(self) -> None:
        active = self.store.active_mitigations()
        for mid, pid in MITIGATION_PLACES.items():
            self.mitigated.set_tokens(pid, 1 if mid in active else 0)

    # --- hazards ---
    def _disrupt(self, net: PetriNet, stage: str, via_cyber: bool) -> None:
        normal, disrupted, _ = STAGES[stage]
        if via_cyber and net.has(CYBER_FEED[stage]):
            net.move(CYBER_FEED[stage], disrupted, self.day, f"cyber {stage}")
        net.move(normal, disrupted, self.day, f"disrupt {stage}")
        if net.tokens(disrupted) > 0:
            self._disrupted_since.setdefault((net.name, stage), self.day)

    def _schedule_cascade(self, stage: str, hops: int) -> None:
        delay = self.store.snapshot().cascade_delay_ms
        at = self.day * DAY_MS + hops * delay
        self._seq += 1
        heapq.heappush(self._pending, _Scheduled(at, self._seq, stage))

    def trigger(self, hazard: HazardType) -> EventCost:
        """Realise one hazard now: move tokens, record costs, schedule cascades."""
        hazard = HazardType(hazard)
        params = self.store.snapshot()
        active = self.store.active_mitigations()
        ev = self.accumulator.record(hazard, params, active, self.store.mitigation_configs(),
                                     buffer=self.store.buffer)
        self.current_fta_probability = params.probability(hazard) * ev.reduction
        self.events.append((self.day, hazard))

        if hazard is HazardType.RANSOMWARE:
            self._disrupt(self.standard, "Mfg", via_cyber=False)
            for net in (self.integrated, self.mitigated):
                self._disrupt(net, "Mfg", via_cyber=True)
            self._schedule_cascade("Dist", 1)
            self._schedule_cascade("Cust", 2)
        elif hazard is HazardType.EQUIPMENT:
            self._disrupt(self.standard, "Dist", via_cyber=False)
            for net in (self.integrated, self.mitigated):
                self._disrupt(net, "Dist", via_cyber=True)
            self._schedule_cascade("Cust", 1)
        else:
            for net in (self.standard, self.integrated, self.mitigated):
                self._disrupt(net, "Mfg", via_cyber=False)

        log.info("day %d: %s event (effective p=%.4f)", self.day, hazard.value,
                 self.current_fta_probability)
        return ev

    def _pick_hazard(self, u: float) -> Optional[HazardType]:
        p = self.store.snapshot()
        threshold = 0.0
        for hazard in (HazardType.RANSOMWARE, HazardType.EQUIPMENT, HazardType.SUPPLIER):
            threshold += p.probability(hazard)
            if u < threshold:
                return hazard
        return None

    # --- clock ---
    def _fire_due(self, until_ms: int) -> None:
        while self._pending and self._pending[0].at_ms <= until_ms:
            item = heapq.heappop(self._pending)
            for net in (self.integrated, self.mitigated):
                self._disrupt(net, item.stage, via_cyber=False)

    def _advance_recovery(self) -> None:
        recovery_days = self.store.snapshot().recovery_factor
        for net in (self.standard, self.integrated, self.mitigated):
            for stage, (normal, disrupted, recovery) in STAGES.items():
                key = (net.name, stage)
                since = self._disrupted_since.get(key)
                if since is not None and self.day - since >= recovery_days:
                    moved = False
                    while net.move(disrupted, recovery, self.day, f"begin recovery {stage}"):
                        moved = True
                    if moved:
                        del self._disrupted_since[key]
                elif since is None and net.tokens(recovery) > 0:
                    # restore one day after recovery began
                    net.set_tokens(recovery, 0)
                    net.set_tokens(normal, 1)
                    if net.has(CYBER_FEED[stage]):
                        net.set_tokens(CYBER_FEED[stage], 1)
                    net.fired.append((self.day, f"restore {stage}"))

    def step(self, u: Optional[float] = None) -> Optional[HazardType]:
        """Advance one day; returns the hazard that fired, if any."""
        if self.finished:
            return None
        self._advance_recovery()
        if u is None:
            u = float(self.rng.random())
        hazard = self._pick_hazard(u)
        if hazard is not None:
            self.trigger(hazard)
        self.day += 1
        self._fire_due(self.day * DAY_MS)
        return hazard

    def run(self, days: Optional[int] = None) -> CostTotals:
        """Run to the horizon (or `days` more days), then flush pending cascades."""
        remaining = self.horizon_days - self.day if days is None else days
        for _ in range(max(0, remaining)):
            if self.finished:
                break
            self.step()
        if self.finished:
            self._fire_due(float("inf"))
            log.info("live run complete: %s", self.results())
        return self.totals

    def reset(self) -> None:
        for net in (self.standard, self.integrated, self.mitigated):
            net.reset()
        self.sync_mitigation_places()
        self.accumulator.reset()
        self.day = 0
        self.current_fta_probability = 0.0
        self.events = []
        self._pending = []
        self._disrupted_since = {}
        self.store.refill_buffer()
