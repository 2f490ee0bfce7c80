"""
Fault tree: gate law, bottom-up probabilities, importance measures and the fixed cut-set table.
"""

import math

import numpy as np
import pytest

from parameters import DEFAULT_MITIGATIONS, Parameters
from fault_tree import (
    BasicEvent,
    CUT_SET_TABLE,
    GateNode,
    GateType,
    and_gate,
    basic_events,
    build_fault_tree,
    evaluate,
    find_node,
    gate_probabilities,
    importance_measures,
    minimal_cut_sets,
    or_gate,
    tree_table,
    importance_table,
    cut_set_table,
)

CFG = DEFAULT_MITIGATIONS


def _tree(active=(), **params):
    return build_fault_tree(Parameters(**params), active, CFG)


def _expected_top(r, e, s, it_ot=0.85, proc=0.03, logi=0.02):
    ie1 = r * it_ot
    ie2 = 1 - (1 - e) * (1 - proc)
    ie3 = 1 - (1 - s) * (1 - logi)
    return 1 - (1 - ie1) * (1 - ie2) * (1 - ie3)


@pytest.mark.parametrize("p1,p2", [(0.0, 0.0), (0.1, 0.2), (0.5, 0.5), (1.0, 0.3), (0.99, 0.01)])
def test_gate_law_bounds(p1, p2):
    assert or_gate([p1, p2]) == pytest.approx(1 - (1 - p1) * (1 - p2))
    assert or_gate([p1, p2]) >= max(p1, p2) - 1e-15
    assert and_gate([p1, p2]) == pytest.approx(p1 * p2)
    assert and_gate([p1, p2]) <= min(p1, p2)


def test_shape():
    root = _tree()
    assert root.id == "TOP" and root.gate_type is GateType.OR
    assert [c.id for c in root.children] == ["IE1", "IE2", "IE3"]
    assert [c.gate_type for c in root.children] == [GateType.AND, GateType.OR, GateType.OR]
    assert [e.id for e in basic_events(root)] == ["BE1", "BE2", "BE3", "BE4", "BE5", "BE6"]


def test_default_top_event_probability():
    root = _tree()
    assert root.probability == pytest.approx(_expected_top(0.02, 0.05, 0.01))
    assert find_node(root, "IE1").probability == pytest.approx(0.02 * 0.85)


def test_gate_probability_is_function_of_children():
    root = _tree()

    def _check(node):
        if isinstance(node, GateNode):
            probs = [c.probability if isinstance(c, GateNode) else c.effective_probability
                     for c in node.children]
            law = and_gate if node.gate_type is GateType.AND else or_gate
            assert node.probability == pytest.approx(law(probs))
            for c in node.children:
                _check(c)

    _check(root)
    gates = gate_probabilities(root)
    assert gates["TOP"] == pytest.approx(root.probability)


def test_mitigations_and_secondary_coupling():
    root = _tree(active={"backup", "firewall", "maintenance", "buffer", "dual", "redundancy"})
    ev = {e.id: e for e in basic_events(root)}
    assert ev["BE1"].effective_probability == pytest.approx(0.0078)
    assert ev["BE2"].effective_probability == 0.55
    assert ev["BE3"].effective_probability == pytest.approx(0.05 * 0.3 * 0.2)
    assert ev["BE4"].effective_probability == 0.01
    assert ev["BE5"].effective_probability == pytest.approx(0.01 * 0.5 * 0.2)
    assert ev["BE6"].effective_probability == 0.005
    # base probabilities are kept alongside
    assert ev["BE2"].base_probability == 0.85
    assert root.probability < _tree().probability


def test_recompute_is_idempotent():
    a = _tree(active={"firewall"}, ransomware_prob=0.07)
    b = _tree(active={"firewall"}, ransomware_prob=0.07)
    assert a.probability == b.probability
    assert [r.fussell_vesely for r in importance_measures(a)] == \
           [r.fussell_vesely for r in importance_measures(b)]


def test_evaluate_with_overrides_does_not_mutate():
    root = _tree()
    before = root.probability
    assert evaluate(root, {"BE3": 1.0}) == 1.0
    assert evaluate(root, {"BE1": 0.0}) < before
    assert evaluate(root) == pytest.approx(before)
    assert find_node(root, "BE3").effective_probability == 0.05


def test_raising_a_hazard_raises_the_top_event():
    assert _tree(equipment_prob=0.2).probability > _tree().probability


def test_importance_measure_definitions():
    root = _tree()
    p = root.probability
    rec = {r.event_id: r for r in importance_measures(root)}
    r3 = rec["BE3"]
    p0 = evaluate(root, {"BE3": 0.0})
    p1 = evaluate(root, {"BE3": 1.0})
    assert r3.fussell_vesely == pytest.approx((p - p0) / p)
    assert r3.birnbaum == pytest.approx(p1 - p0)
    assert r3.raw == pytest.approx(p1 / p)
    assert r3.rrw == pytest.approx(p / p0)
    assert r3.criticality == pytest.approx((r3.fussell_vesely + r3.birnbaum + (r3.raw - 1)) / 3)


@pytest.mark.parametrize("active,params", [
    ((), {}),
    (("backup", "firewall", "buffer", "dual", "maintenance", "redundancy"), {}),
    ((), {"ransomware_prob": 0.9}),
    (("firewall", "dual"), {"ransomware_prob": 0.5, "equipment_prob": 0.5, "supplier_prob": 0.5}),
    (("maintenance",), {"ransomware_prob": 0.0, "equipment_prob": 0.0, "supplier_prob": 0.0}),
])
def test_importance_bounds_and_ordering(active, params):
    root = _tree(active=active, **params)
    assert 0.0 < root.probability < 1.0
    records = importance_measures(root)
    assert len(records) == 6
    crit = [r.criticality for r in records]
    assert crit == sorted(crit, reverse=True)
    for r in records:
        assert 0.0 <= r.fussell_vesely <= 1.0 + 1e-12
        assert r.raw >= 1.0 - 1e-12
        assert r.rrw >= 1.0 - 1e-12
        assert r.birnbaum >= 0.0


def test_fussell_vesely_is_not_additive():
    # the AND pair shares one contribution, so the default tree sums past 1
    records = importance_measures(_tree())
    assert sum(r.fussell_vesely for r in records) >= 1.0 - 1e-9


def test_zero_top_event_sentinels():
    zero = GateNode("TOP", "t", "G1", GateType.OR, (
        BasicEvent("A", "a", "x", 0.0, 0.0, 0.0),
        BasicEvent("B", "b", "x", 0.0, 0.0, 0.0),
    ), 0.0)
    recs = importance_measures(zero)
    for r in recs:
        assert r.fussell_vesely == 0.0
        assert r.raw == 1.0
        assert math.isinf(r.rrw)


def test_rrw_infinite_when_event_is_only_path():
    single = GateNode("TOP", "t", "G1", GateType.OR, (BasicEvent("A", "a", "x", 0.3, 0.3, 0.0),), 0.3)
    (rec,) = importance_measures(single)
    assert math.isinf(rec.rrw)
    assert rec.fussell_vesely == pytest.approx(1.0)


def test_cut_set_table_is_tied_to_fixed_topology():
    # hand-enumerated for this tree; a topology change must update CUT_SET_TABLE
    root = _tree()
    ids = {e.id for e in basic_events(root)}
    for _cid, _name, events, _cat, source in CUT_SET_TABLE:
        assert set(events) <= ids
        assert find_node(root, source) is not None
    covered = set().union(*(set(row[2]) for row in CUT_SET_TABLE))
    assert covered == ids


def test_minimal_cut_sets():
    root = _tree()
    cuts = minimal_cut_sets(root)
    assert len(cuts) == 5
    probs = [c.probability for c in cuts]
    assert probs == sorted(probs, reverse=True)
    by_id = {c.id: c for c in cuts}
    assert by_id["MCS1"].events == ("BE1", "BE2")
    assert by_id["MCS1"].order == 2
    assert by_id["MCS1"].probability == pytest.approx(0.02 * 0.85)
    assert by_id["MCS2"].probability == 0.05
    assert by_id["MCS5"].event_names == ("Logistics Failure",)
    assert all(c.order == 1 for c in cuts if c.id != "MCS1")


def test_tables():
    root = _tree()
    assert len(tree_table(root)) == 10
    assert len(importance_table(importance_measures(root))) == 6
    df = cut_set_table(minimal_cut_sets(root))
    assert df.loc[df["Cut set"] == "MCS1", "Events"].item() == "BE1 AND BE2"
    assert np.isnan(tree_table(root).loc[0, "Base P"])
