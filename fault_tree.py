# fault_tree.py
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd

from parameters import HazardType, MitigationConfig, Parameters
from mitigations import HAZARD_MITIGATIONS, effective_probability
from costs import BASE_COSTS

__all__ = [
    "GateType",
    "BasicEvent",
    "GateNode",
    "ImportanceRecord",
    "MinimalCutSet",
    "COUPLED_EVENTS",
    "CUT_SET_TABLE",
    "and_gate",
    "or_gate",
    "build_fault_tree",
    "basic_events",
    "find_node",
    "evaluate",
    "gate_probabilities",
    "importance_measures",
    "minimal_cut_sets",
    "tree_table",
    "importance_table",
    "cut_set_table",
]

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Node types
# ---------------------------------------------------------------------

class GateType(str, Enum):
    AND = "AND"
    OR = "OR"


@dataclass(frozen=True)
class BasicEvent:
    id: str
    name: str
    category: str                     # cyber / physical / supply
    base_probability: float
    effective_probability: float
    base_cost: float
    mitigations: Tuple[str, ...] = ()
    description: str = ""


@dataclass(frozen=True)
class GateNode:
    """
    AND/OR gate over an ordered tuple of children.

    `probability` is filled in by `_gate()` from the children at construction;
    nodes are frozen, so a tree is rebuilt rather than patched.
    """
    id: str
    name: str
    gate_id: str
    gate_type: GateType
    children: Tuple["Node", ...]
    probability: float = 0.0
    description: str = ""


Node = Union[BasicEvent, GateNode]

# ---------------------------------------------------------------------
# Gate law (independent events)
# ---------------------------------------------------------------------

def and_gate(probs: Iterable[float]) -> float:
    return float(np.prod(list(probs), dtype=float))


def or_gate(probs: Iterable[float]) -> float:
    return 1.0 - float(np.prod([1.0 - p for p in probs], dtype=float))


_GATE_LAW = {GateType.AND: and_gate, GateType.OR: or_gate}


def evaluate(node: Node, overrides: Optional[Mapping[str, float]] = None) -> float:
    """
    Probability of `node` with some basic events forced to given values.

    Pure: the tree is read, never mutated, so any number of what-if
    evaluations can run against the same nominal tree.
    """
    overrides = overrides or {}
    if isinstance(node, BasicEvent):
        return float(overrides.get(node.id, node.effective_probability))
    child_probs = [evaluate(c, overrides) for c in node.children]
    if not child_probs:
        return 0.0
    return _GATE_LAW[node.gate_type](child_probs)


def gate_probabilities(root: Node, overrides: Optional[Mapping[str, float]] = None) -> Dict[str, float]:
    """gate/intermediate id -> probability, for every gate under `root`."""
    out: Dict[str, float] = {}

    def _walk(node: Node) -> None:
        if isinstance(node, GateNode):
            out[node.id] = evaluate(node, overrides)
            for c in node.children:
                _walk(c)

    _walk(root)
    return out


def _gate(node_id: str, name: str, gate_id: str, gate_type: GateType,
          children: Iterable[Node], description: str = "") -> GateNode:
    children = tuple(children)
    unresolved = GateNode(node_id, name, gate_id, gate_type, children, 0.0, description)
    return GateNode(node_id, name, gate_id, gate_type, children, evaluate(unresolved), description)

# ---------------------------------------------------------------------
# Fixed topology
# ---------------------------------------------------------------------

# Events without their own mitigation object: a fixed probability that drops
# to a fixed reduced value while one named mitigation is active.
# event id -> (nominal, reduced, mitigation id)
COUPLED_EVENTS: Dict[str, Tuple[float, float, str]] = {
    "BE2": (0.85, 0.55, "firewall"),
    "BE4": (0.03, 0.01, "maintenance"),
    "BE6": (0.02, 0.005, "buffer"),
}


def _coupled_event(event_id: str, name: str, category: str, base_cost: float,
                   active: frozenset, description: str) -> BasicEvent:
    nominal, reduced, mid = COUPLED_EVENTS[event_id]
    return BasicEvent(
        id=event_id,
        name=name,
        category=category,
        base_probability=nominal,
        effective_probability=reduced if mid in active else nominal,
        base_cost=base_cost,
        mitigations=(mid,),
        description=description,
    )


def _hazard_event(event_id: str, name: str, category: str, hazard: HazardType,
                  params: Parameters, active: frozenset,
                  configs: Mapping[str, MitigationConfig], description: str) -> BasicEvent:
    base = params.probability(hazard)
    return BasicEvent(
        id=event_id,
        name=name,
        category=category,
        base_probability=base,
        # steady-state view: buffer counted as available
        effective_probability=effective_probability(base, hazard, active, configs),
        base_cost=BASE_COSTS[hazard],
        mitigations=HAZARD_MITIGATIONS[hazard],
        description=description,
    )


def build_fault_tree(
    params: Parameters,
    active: Iterable[str],
    configs: Mapping[str, MitigationConfig],
) -> GateNode:
    """Rebuild the supply-chain disruption tree from a parameter snapshot."""
    active = frozenset(active)

    cyber = _gate("IE1", "Cyber Attack Impact", "G2", GateType.AND, [
        _hazard_event("BE1", "Ransomware Attack", "cyber", HazardType.RANSOMWARE,
                      params, active, configs, "Malicious encryption of IT systems"),
        _coupled_event("BE2", "IT-OT Connection", "cyber", 0.0, active,
                       "Network path between IT and operational technology"),
    ], "Attack must succeed AND propagate to physical systems")

    physical = _gate("IE2", "Physical System Failure", "G3", GateType.OR, [
        _hazard_event("BE3", "Equipment Failure", "physical", HazardType.EQUIPMENT,
                      params, active, configs, "Critical manufacturing equipment breakdown"),
        _coupled_event("BE4", "Process Deviation", "physical", 15000.0, active,
                       "Quality or process control failure"),
    ], "Any physical failure causes disruption")

    supply = _gate("IE3", "Supply Network Failure", "G4", GateType.OR, [
        _hazard_event("BE5", "Supplier Disruption", "supply", HazardType.SUPPLIER,
                      params, active, configs, "Key supplier bankruptcy or capacity issue"),
        _coupled_event("BE6", "Logistics Failure", "supply", 10000.0, active,
                       "Transportation or distribution breakdown"),
    ], "Any supply issue causes disruption")

    return _gate("TOP", "Supply Chain Disruption", "G1", GateType.OR, [cyber, physical, supply],
                 "Complete or partial supply chain failure affecting customer delivery")


def basic_events(node: Node) -> List[BasicEvent]:
    """Leaves in depth-first, left-to-right order."""
    if isinstance(node, BasicEvent):
        return [node]
    out: List[BasicEvent] = []
    for c in node.children:
        out.extend(basic_events(c))
    return out


def find_node(node: Node, node_id: str) -> Optional[Node]:
    if node.id == node_id:
        return node
    if isinstance(node, GateNode):
        for c in node.children:
            hit = find_node(c, node_id)
            if hit is not None:
                return hit
    return None

# ---------------------------------------------------------------------
# Importance measures
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ImportanceRecord:
    event_id: str
    name: str
    category: str
    base_probability: float
    effective_probability: float
    base_cost: float
    mitigations: Tuple[str, ...]
    fussell_vesely: float
    birnbaum: float
    raw: float
    rrw: float
    criticality: float


def _measures(root: Node, event_id: str, p_top: float) -> Tuple[float, float, float, float]:
    p_down = evaluate(root, {event_id: 0.0})
    p_up = evaluate(root, {event_id: 1.0})

    if p_top == 0:
        log.debug("top event probability is 0; FV=0 and RAW=1 for %s", event_id)
        fv, raw = 0.0, 1.0
    else:
        fv = (p_top - p_down) / p_top
        raw = p_up / p_top

    birnbaum = p_up - p_down

    if p_down == 0:
        log.debug("top event impossible without %s; RRW=inf", event_id)
        rrw = math.inf
    else:
        rrw = p_top / p_down
    return fv, birnbaum, raw, rrw


def importance_measures(root: Node) -> List[ImportanceRecord]:
    """
    Fussell-Vesely, Birnbaum, RAW and RRW for every basic event, ranked by a
    composite criticality score (FV + Birnbaum + (RAW - 1)) / 3. The composite
    is a ranking heuristic of this tool, not a standard reliability measure.
    """
    p_top = evaluate(root)
    records: List[ImportanceRecord] = []
    for ev in basic_events(root):
        fv, b, raw, rrw = _measures(root, ev.id, p_top)
        records.append(ImportanceRecord(
            event_id=ev.id,
            name=ev.name,
            category=ev.category,
            base_probability=ev.base_probability,
            effective_probability=ev.effective_probability,
            base_cost=ev.base_cost,
            mitigations=ev.mitigations,
            fussell_vesely=fv,
            birnbaum=b,
            raw=raw,
            rrw=rrw,
            criticality=(fv + b + (raw - 1.0)) / 3.0,
        ))
    records.sort(key=lambda r: r.criticality, reverse=True)
    return records

# ---------------------------------------------------------------------
# Minimal cut sets
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class MinimalCutSet:
    id: str
    name: str
    events: Tuple[str, ...]
    event_names: Tuple[str, ...]
    probability: float
    category: str

    @property
    def order(self) -> int:
        return len(self.events)


# Enumerated by hand for the fixed topology above; a topology change must
# update this table. (id, name, basic events, category, node whose
# probability the set carries)
CUT_SET_TABLE: Tuple[Tuple[str, str, Tuple[str, ...], str, str], ...] = (
    ("MCS1", "Cyber Attack Cascade", ("BE1", "BE2"), "cyber", "IE1"),
    ("MCS2", "Equipment Breakdown", ("BE3",), "physical", "BE3"),
    ("MCS3", "Process Failure", ("BE4",), "physical", "BE4"),
    ("MCS4", "Supplier Failure", ("BE5",), "supply", "BE5"),
    ("MCS5", "Logistics Breakdown", ("BE6",), "supply", "BE6"),
)


def minimal_cut_sets(root: Node) -> List[MinimalCutSet]:
    """Cut sets of the fixed tree, most probable first."""
    names = {ev.id: ev.name for ev in basic_events(root)}
    cuts: List[MinimalCutSet] = []
    for cid, name, events, category, source in CUT_SET_TABLE:
        node = find_node(root, source)
        if node is None:
            raise KeyError(f"cut set {cid} refers to missing node {source!r}")
        cuts.append(MinimalCutSet(
            id=cid,
            name=name,
            events=events,
            event_names=tuple(names[e] for e in events),
            probability=evaluate(node),
            category=category,
        ))
    cuts.sort(key=lambda c: c.probability, reverse=True)
    return cuts

# ---------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------

def tree_table(root: Node) -> pd.DataFrame:
    rows: List[dict] = []

    def _walk(node: Node, depth: int) -> None:
        if isinstance(node, BasicEvent):
            rows.append({"Node": node.id, "Name": node.name, "Level": depth, "Gate": "",
                         "Base P": node.base_probability, "P": node.effective_probability,
                         "Category": node.category})
            return
        rows.append({"Node": node.id, "Name": node.name, "Level": depth,
                     "Gate": f"{node.gate_id} {node.gate_type.value}",
                     "Base P": np.nan, "P": node.probability, "Category": ""})
        for c in node.children:
            _walk(c, depth + 1)

    _walk(root, 0)
    return pd.DataFrame(rows)


def importance_table(records: List[ImportanceRecord]) -> pd.DataFrame:
    return pd.DataFrame([{
        "Event": r.event_id,
        "Name": r.name,
        "Category": r.category,
        "P (eff.)": r.effective_probability,
        "Fussell-Vesely": r.fussell_vesely,
        "Birnbaum": r.birnbaum,
        "RAW": r.raw,
        "RRW": r.rrw,
        "Criticality": r.criticality,
    } for r in records])


def cut_set_table(cuts: List[MinimalCutSet]) -> pd.DataFrame:
    return pd.DataFrame([{
        "Cut set": c.id,
        "Name": c.name,
        "Events": " AND ".join(c.events),
        "Order": c.order,
        "Probability": c.probability,
        "Category": c.category,
    } for c in cuts])
