"""
RiskSimulator facade: shared state, exports, Monte Carlo wiring and mitigation what-if tables.
"""

import json
import threading

import pandas as pd
import pytest

from engine import SamplerConfig
from fault_tree import basic_events
from parameters import MITIGATION_IDS, ConfigurationError, ParameterStore
from simulator import RiskSimulator, isolation_table, marginal_table


@pytest.fixture
def sim():
    return RiskSimulator(sampler_config=SamplerConfig(iterations=100, seed=9), seed=1)


def test_parameters_flow_through_the_store(sim):
    sim.set_parameter("equipmentProb", 0.2)
    assert sim.get_parameters().equipment_prob == 0.2
    with pytest.raises(ConfigurationError):
        sim.set_parameter("equipmentProb", 7)
    assert sim.get_parameters().equipment_prob == 0.2


def test_toggle_updates_tree_and_live_net(sim):
    before = sim.compute_fault_tree().probability
    assert sim.toggle_mitigation("backup") is True
    assert sim.get_active_mitigations() == frozenset({"backup"})
    assert sim.live.mitigated.tokens("M1") == 1
    assert sim.compute_fault_tree().probability < before
    assert sim.toggle_mitigation("backup") is False
    assert sim.live.mitigated.tokens("M1") == 0


def test_importance_and_cut_sets(sim):
    assert len(sim.compute_importance_measures()) == 6
    assert [c.id for c in sim.compute_minimal_cut_sets()][0] == "MCS2"


def test_export_snapshot(sim):
    sim.live.trigger("ransomware")
    snap = sim.export_snapshot()
    assert set(snap) == {"parameters", "results", "timestamp"}
    assert snap["results"] == {"cascades": 2, "standardCost": 50000.0,
                               "integratedCost": 100000.0, "ftaProbability": 0.02}
    assert pd.Timestamp(snap["timestamp"]).tzinfo is not None
    assert json.loads(sim.export_snapshot_json())["parameters"]["ransomwareProb"] == 0.02


@pytest.mark.asyncio
async def test_monte_carlo_export(sim):
    assert sim.export_monte_carlo() is None
    sim.toggle_mitigation("dual")
    stats = await sim.run_monte_carlo()
    assert stats.iterations == 100
    out = sim.export_monte_carlo()
    assert out["metadata"]["iterations"] == 100
    assert out["metadata"]["timeHorizon"] == 30
    assert out["activeMitigations"] == ["dual"]
    assert len(out["rawData"]["integrated"]) == 100
    assert out["statistics"]["integrated"]["mean"] == pytest.approx(stats.integrated.mean)
    json.dumps(out)
    h = sim.monte_carlo_histogram("standard", bins=10)
    assert sum(h.bins) == 100

    sim.reset()
    assert sim.export_monte_carlo() is None


@pytest.mark.asyncio
async def test_cancel_through_facade(sim):
    def on_progress(_):
        sim.cancel_monte_carlo()

    stats = await sim.run_monte_carlo(iterations=1000, on_progress=on_progress)
    assert stats.cancelled
    assert stats.iterations == 50


def test_live_run_and_economics(sim):
    for mid in ("backup", "firewall"):
        sim.toggle_mitigation(mid)
    assert sim.portfolio_cost() == 8000.0
    assert sim.savings_roi() == 0.0
    sim.live.trigger("ransomware")
    assert sim.savings_roi() == pytest.approx(sim.live.totals.savings / 8000.0 * 100)
    assert sim.comparison_percent() == pytest.approx(100.0)

    sim.reset()
    sim.run_live()
    assert sim.live.finished
    assert sim.step_live() is None


def test_catalogue_reflects_active_set(sim):
    sim.toggle_mitigation("maintenance")
    df = sim.mitigation_catalogue()
    assert df.set_index("Mitigation").loc["maintenance", "Active"]


def test_isolation_table():
    df = isolation_table(ParameterStore())
    assert len(df) == len(MITIGATION_IDS)
    assert (df["ΔP(top)"] > 0).all()
    assert (df["ΔExpected cost ($/horizon)"] > 0).all()
    benefit = list(df["Benefit per $"])
    assert benefit == sorted(benefit, reverse=True)


def test_marginal_table():
    store = ParameterStore(active=["backup", "firewall"])
    df = marginal_table(store)
    assert len(df) == 4
    assert "Automated Backup" not in set(df["Add"])

    full = marginal_table(ParameterStore(active=MITIGATION_IDS))
    assert full.empty
    assert "Marginal ROI %" in full.columns


def test_export_config_round_trips(sim):
    sim.toggle_mitigation("buffer")
    sim.set_parameter("recoveryFactor", 5)
    restored = ParameterStore.from_dict(sim.export_config())
    assert restored.snapshot() == sim.get_parameters()
    assert restored.active_mitigations() == frozenset({"buffer"})


def test_simulator_builds_in_a_thread_without_event_loop():
    errors = []

    def worker():
        try:
            RiskSimulator()
        except RuntimeError as exc:
            errors.append(exc)

    t = threading.Thread(target=worker)
    t.start()
    t.join()
    assert errors == []


def test_risk_mapping(sim):
    sim.set_parameter("costMultiplier", 2.0)
    sim.toggle_mitigation("backup")
    df = sim.risk_mapping()
    assert list(df["FTA id"]) == ["BE1", "BE3", "BE5"]
    assert list(df["Petri transition"]) == ["T1 (FTA: Ransomware)", "T2 (FTA: Equipment)",
                                            "T3 (FTA: Supplier)"]
    row = df.set_index("FTA id").loc["BE1"]
    assert row["Base P"] == 0.02
    assert row["Effective P"] == pytest.approx(0.02 * 0.6)
    assert row["Cost impact ($)"] == 100000.0
    assert df.set_index("FTA id").loc["BE3", "Effective P"] == 0.05
    assert list(df["Cost impact ($)"]) == [100000.0, 60000.0, 40000.0]

    tree = {e.id: e for e in basic_events(sim.compute_fault_tree())}
    assert row["Effective P"] == pytest.approx(tree["BE1"].effective_probability)
