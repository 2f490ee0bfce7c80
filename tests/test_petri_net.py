"""
Live token simulation: hazard selection, cascades on the delay clock, recovery and costs.
"""

import pytest

from parameters import HazardType, ParameterStore
from petri_net import DAY_MS, LiveSimulation, integrated_net, mitigated_net, standard_net

QUIET = 0.99          # above the summed default thresholds (0.08)


def _live(**kw):
    return LiveSimulation(ParameterStore(**kw), seed=0)


def test_net_shapes():
    assert len(standard_net().places) == 9
    assert not standard_net().has("P10")
    assert integrated_net().tokens("P10") == 1
    m = mitigated_net()
    assert len(m.places) == 18
    assert all(m.tokens(pid) == 0 for pid in ("M1", "M2", "M3", "M4", "M5", "M6"))


@pytest.mark.parametrize("u,expected", [
    (0.0, HazardType.RANSOMWARE),
    (0.03, HazardType.EQUIPMENT),
    (0.075, HazardType.SUPPLIER),
    (QUIET, None),
])
def test_one_draw_picks_at_most_one_hazard(u, expected):
    live = _live()
    assert live.step(u) is expected
    assert live.day == 1
    assert len(live.events) == (0 if expected is None else 1)


def test_ransomware_disrupts_then_cascades_downstream():
    live = _live()
    live.step(0.0)
    assert live.standard.tokens("P2") == 1 and live.standard.tokens("P1") == 0
    # cyber feed joins the disruption on the integrated track
    assert live.integrated.tokens("P2") == 2 and live.integrated.tokens("P10") == 0
    assert live.totals.cascades == 2

    # default delay 800ms: Dist reached within the first day, Cust on the second
    assert live.integrated.tokens("P5") == 1
    assert live.integrated.tokens("P8") == 0
    live.step(QUIET)
    assert live.integrated.tokens("P8") == 1
    assert live.mitigated.tokens("P8") == 1
    # the standard view never cascades
    assert live.standard.tokens("P5") == 0 and live.standard.tokens("P8") == 0


def test_equipment_cascades_to_customer_only():
    live = _live()
    live.step(0.03)
    assert live.integrated.tokens("P5") == 2
    assert live.integrated.tokens("P8") == 1
    assert live.integrated.tokens("P2") == 0
    assert live.totals.cascades == 1


def test_long_cascade_delay_waits_for_later_days():
    store = ParameterStore()
    store.set_parameter("cascadeDelay", 2 * DAY_MS + 500)
    live = LiveSimulation(store)
    live.step(0.03)
    live.step(QUIET)
    assert live.integrated.tokens("P8") == 0
    live.step(QUIET)
    assert live.integrated.tokens("P8") == 1


def test_recovery_then_restore():
    live = _live()
    live.step(0.0)                 # day 0
    live.step(QUIET)               # day 1
    live.step(QUIET)               # day 2
    assert live.standard.tokens("P2") == 1
    live.step(QUIET)               # day 3: recovery_factor days have passed
    assert live.standard.tokens("P2") == 0
    assert live.standard.tokens("P3") == 1
    live.step(QUIET)               # day 4: back to normal
    assert live.standard.tokens("P3") == 0
    assert live.standard.tokens("P1") == 1
    assert live.integrated.tokens("P1") == 1 and live.integrated.tokens("P10") == 1


def test_supplier_event_uses_store_buffer():
    live = _live(active=["buffer"])
    assert live.store.buffer_days_remaining == 30
    ev = live.trigger(HazardType.SUPPLIER)
    assert live.store.buffer_days_remaining == 29
    assert ev.mitigated == pytest.approx(20000.0 * 1.75 * 0.2)
    live.reset()
    assert live.store.buffer_days_remaining == 30
    assert live.day == 0 and live.events == []
    assert live.totals.standard == 0.0


def test_results_and_comparison():
    live = _live(active=["backup"])
    assert live.comparison_percent() == 0.0
    live.trigger(HazardType.RANSOMWARE)
    res = live.results()
    assert set(res) == {"cascades", "standardCost", "integratedCost", "ftaProbability"}
    assert res["standardCost"] == 50000.0
    assert res["integratedCost"] == 100000.0
    assert res["ftaProbability"] == pytest.approx(0.02 * 0.6)
    assert live.comparison_percent() == pytest.approx(100.0)
    assert live.totals.savings == pytest.approx(100000.0 * 0.4)


def test_mitigation_places_follow_the_store():
    live = _live(active=["firewall"])
    assert live.mitigated.tokens("M2") == 1
    live.store.toggle_mitigation("redundancy")
    live.sync_mitigation_places()
    assert live.mitigated.tokens("M6") == 1
    live.store.toggle_mitigation("firewall")
    live.sync_mitigation_places()
    assert live.mitigated.tokens("M2") == 0


def test_run_to_horizon():
    live = LiveSimulation(ParameterStore(), seed=42, horizon_days=30)
    totals = live.run()
    assert live.finished and live.day == 30
    assert live.step() is None
    assert totals.integrated >= totals.standard
    assert totals.mitigated == totals.integrated
    assert len(live.events) <= 30
