import streamlit as st
import pandas as pd
import numpy as np
import json
import asyncio
import logging
import plotly.graph_objects as go
import plotly.express as px

from parameters import ConfigurationError, ParameterStore, MITIGATION_IDS
from mitigations import MITIGATION_NAMES
from fault_tree import tree_table, importance_table, cut_set_table
from engine import SamplerConfig
from simulator import RiskSimulator

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

# Configure Streamlit page (title + full-width). Needs to be at the top.
st.set_page_config(page_title="Cyber-Physical Supply-Chain Risk Simulator", layout="wide")

# App header
st.title("Cyber-Physical Supply-Chain Risk Simulator")
st.caption("Petri-net cascade simulation, fault-tree analysis and Monte Carlo validation on one shared parameter set.")

# ===========================
# HELP / HOW-TO (collapsible)
# ===========================
with st.expander("❓ Help & How to Use This App", expanded=False):
    st.markdown("""
## Overview
Three views read the same parameters and mitigations:
- **Live simulation**: a 30-day token run of three Petri nets (standard, cyber-integrated, mitigated)
- **Fault tree**: top-event probability, importance measures and minimal cut sets
- **Monte Carlo**: cost distributions over many independent 30-day trials

### Key Metrics
- **Underestimation %**: how much the standard (no-cascade) model under-states cascade-aware cost
- **Mitigation effect %**: change in mean cost when mitigations are active (negative = improvement)
- **VaR95**: 95th percentile of the 30-day cost distribution
- **Fussell-Vesely / Birnbaum / RAW / RRW**: contribution of each basic event to the top event

### Sanity checks
- With no mitigations the integrated and mitigated Monte Carlo means are identical.
- Raising any hazard probability raises the top-event probability.
    """)

# =========================
# SESSION STATE
# =========================
if "sim" not in st.session_state:
    st.session_state["sim"] = RiskSimulator()
sim: RiskSimulator = st.session_state["sim"]

# =========================
# SIDEBAR: USER PARAMETERS
# =========================
st.sidebar.header("⚙️ Model Parameters")

with st.sidebar.expander("📁 Load config JSON", expanded=False):
    cj = st.file_uploader("Upload config.json", type=["json"], key="config_json")
    if cj and st.button("Apply config"):
        try:
            st.session_state["sim"] = RiskSimulator(ParameterStore.from_dict(json.load(cj)))
            st.success("✓ Config loaded")
            st.rerun()
        except (ConfigurationError, ValueError) as e:
            st.error(f"Config rejected: {e}")

p = sim.get_parameters()
with st.sidebar.expander("🎲 Hazards", expanded=True):
    ransomware = st.slider("Ransomware probability (%/day)", 0.0, 10.0, p.ransomware_prob * 100, 0.5)
    equipment = st.slider("Equipment failure probability (%/day)", 0.0, 20.0, p.equipment_prob * 100, 0.5)
    supplier = st.slider("Supplier disruption probability (%/day)", 0.0, 10.0, p.supplier_prob * 100, 0.5)

with st.sidebar.expander("🔗 Cascade & cost", expanded=False):
    delay = st.slider("Cascade delay (ms)", 0, 3000, p.cascade_delay_ms, 100)
    recovery = st.slider("Recovery factor (days)", 1, 10, p.recovery_factor, 1)
    cost_mult = st.slider("Cost multiplier", 0.1, 5.0, float(p.cost_multiplier), 0.1)

try:
    sim.store.update(
        ransomware_prob=ransomware / 100,
        equipment_prob=equipment / 100,
        supplier_prob=supplier / 100,
        cascade_delay_ms=delay,
        recovery_factor=recovery,
        cost_multiplier=cost_mult,
    )
except ConfigurationError as e:
    st.sidebar.error(str(e))

# checkbox state belongs to one simulator; a loaded config starts from its own active set
if st.session_state.get("mit_owner") is not sim:
    for mid in MITIGATION_IDS:
        st.session_state.pop(f"mit_{mid}", None)
    st.session_state["mit_owner"] = sim

with st.sidebar.expander("🛡️ Mitigations", expanded=True):
    configs = sim.store.mitigation_configs()
    for mid in MITIGATION_IDS:
        on = st.checkbox(f"{MITIGATION_NAMES[mid]} (${configs[mid].cost:,.0f})",
                         value=sim.store.is_active(mid), key=f"mit_{mid}")
        if on != sim.store.is_active(mid):
            sim.toggle_mitigation(mid)
    st.caption(f"Portfolio cost: ${sim.portfolio_cost():,.0f} · Buffer days left: {sim.store.buffer_days_remaining}")

with st.sidebar.expander("📈 Monte Carlo", expanded=False):
    iterations = st.number_input("Trials", 0, 100000, sim.sampler.config.iterations, 100)
    bins = st.slider("Histogram bins", 5, 60, sim.sampler.config.histogram_bins, 1)
    seed = st.number_input("Random Seed (0 = random)", 0, 9999, 0)
    mitigate_freq = st.checkbox("Mitigations also reduce event frequency", value=False)
    sim.sampler.config = SamplerConfig(iterations=int(iterations), histogram_bins=int(bins),
                                       seed=int(seed) or None, mitigate_frequency=mitigate_freq).validate()

# =========================
# TABS
# =========================
tab_live, tab_fta, tab_mc, tab_mit = st.tabs(["🔄 Live simulation", "🌳 Fault tree", "🎲 Monte Carlo", "🛡️ Mitigations"])

with tab_live:
    c1, c2, c3 = st.columns(3)
    if c1.button("▶️ Run 30-day simulation"):
        sim.run_live()
    if c2.button("⏭️ Step one day"):
        sim.step_live()
    if c3.button("🧹 Reset"):
        sim.reset()
        st.rerun()

    t = sim.live.totals
    m1, m2, m3, m4, m5 = st.columns(5)
    m1.metric("Day", f"{sim.live.day}/{sim.live.horizon_days}")
    m2.metric("Standard cost", f"${t.standard:,.0f}")
    m3.metric("Integrated cost", f"${t.integrated:,.0f}", f"{sim.comparison_percent():+.1f}%")
    m4.metric("Mitigated cost", f"${t.mitigated:,.0f}")
    m5.metric("Cascades", f"{t.cascades}")
    st.caption(f"Savings ${t.savings:,.0f} · ROI {sim.savings_roi():.1f}% · "
               f"Current FTA probability {sim.live.current_fta_probability:.4f}")

    nets = st.columns(3)
    for col, net in zip(nets, (sim.live.standard, sim.live.integrated, sim.live.mitigated)):
        col.subheader(net.name.title())
        col.dataframe(net.to_frame(), hide_index=True, use_container_width=True)

    if sim.live.events:
        ev_df = pd.DataFrame([{"Day": d, "Hazard": h.value} for d, h in sim.live.events])
        st.plotly_chart(px.histogram(ev_df, x="Day", color="Hazard", nbins=30, title="Events by day"),
                        use_container_width=True)

    st.download_button("💾 Download snapshot.json", sim.export_snapshot_json(),
                       "petri-net-simulation.json", "application/json")

with tab_fta:
    root = sim.compute_fault_tree()
    st.metric("P(top event): Supply Chain Disruption", f"{root.probability:.4%}")
    st.dataframe(tree_table(root), hide_index=True, use_container_width=True)

    st.subheader("Importance measures")
    imp_df = importance_table(sim.compute_importance_measures())
    st.dataframe(imp_df.style.format({
        "P (eff.)": "{:.4f}", "Fussell-Vesely": "{:.3f}", "Birnbaum": "{:.3f}",
        "RAW": "{:.2f}", "RRW": "{:.2f}", "Criticality": "{:.3f}",
    }), hide_index=True, use_container_width=True)
    fig = go.Figure([go.Bar(x=imp_df["Event"], y=imp_df["Criticality"], text=imp_df["Name"])])
    fig.update_layout(title="Criticality ranking", yaxis_title="Criticality")
    st.plotly_chart(fig, use_container_width=True)

    st.subheader("Minimal cut sets")
    st.dataframe(cut_set_table(sim.compute_minimal_cut_sets()).style.format({"Probability": "{:.4%}"}),
                 hide_index=True, use_container_width=True)

with tab_mc:
    if st.button("🎲 Run Monte Carlo"):
        bar = st.progress(0.0, text="Running trials...")
        asyncio.run(sim.run_monte_carlo(
            int(iterations), on_progress=lambda f: bar.progress(min(f, 1.0), text=f"{f:.0%} of trials")))
        bar.empty()

    stats = sim.sampler.statistics
    if stats is None:
        st.info("Run the Monte Carlo simulation to see cost distributions.")
    else:
        k1, k2, k3, k4 = st.columns(4)
        k1.metric("Trials", f"{stats.iterations:,}")
        k2.metric("Underestimation", f"{stats.underestimation_percent:.1f}%")
        k3.metric("Mitigation effect", f"{stats.mitigation_effect_percent:.1f}%")
        k4.metric("VaR95 (mitigated)", f"${stats.value_at_risk['mitigated95']:,.0f}")
        st.dataframe(stats.summary_frame().style.format({
            c: "${:,.0f}" for c in ["Mean", "Std dev", "Median", "P95 (VaR)", "P99", "Max", "CI95 low", "CI95 high"]
        }), hide_index=True, use_container_width=True)

        fig = go.Figure()
        for key in ("standard", "integrated", "mitigated"):
            h = sim.monte_carlo_histogram(key)
            if h is not None and h.bins:
                edges = np.asarray(h.bin_edges)
                fig.add_trace(go.Bar(x=(edges[:-1] + edges[1:]) / 2, y=h.bins, name=key.title(), opacity=0.6))
        fig.update_layout(barmode="overlay", title="30-day cost distribution",
                          xaxis_title="Total cost ($)", yaxis_title="Trials")
        st.plotly_chart(fig, use_container_width=True)

        export = sim.export_monte_carlo()
        st.download_button("💾 Download Monte Carlo results", json.dumps(export, indent=2),
                           "monte-carlo-results.json", "application/json")

with tab_mit:
    st.subheader("Risk mapping")
    st.dataframe(sim.risk_mapping().style.format({
        "Base P": "{:.2%}", "Effective P": "{:.2%}", "Cost impact ($)": "${:,.0f}",
    }), hide_index=True, use_container_width=True)

    st.dataframe(sim.mitigation_catalogue().style.format({"Reduction": "{:.0%}", "Cost ($)": "${:,.0f}"}),
                 hide_index=True, use_container_width=True)

    st.header("🔬 Mitigation Isolation Analysis")
    st.caption("Each mitigation on its own (all others off)")
    iso_df = sim.mitigation_isolation()
    st.dataframe(iso_df.style.format({
        "ΔP(top)": "{:.4%}", "ΔExpected cost ($/horizon)": "${:,.0f}", "Cost ($)": "${:,.0f}",
        "Benefit per $": "{:,.2f}", "ROI %": "{:.1f}%",
    }), hide_index=True, use_container_width=True)

    st.header("🧩 Marginal ROI (from current bundle)")
    marg_df = sim.marginal_mitigations()
    if marg_df.empty:
        st.info("All mitigations are already selected; no marginal adds to evaluate.")
    else:
        st.dataframe(marg_df.style.format({
            "ΔP(top) from bundle": "{:.4%}", "ΔExpected cost from bundle ($/horizon)": "${:,.0f}",
            "Incremental cost ($)": "${:,.0f}", "Marginal ROI %": "{:.1f}%",
        }), hide_index=True, use_container_width=True)

# ============================
# EXPORT CURRENT CONFIG (JSON)
# ============================
st.sidebar.markdown("---")
st.sidebar.download_button(
    label="💾 Download config.json",
    data=json.dumps(sim.export_config(), indent=2),
    file_name="supply_chain_risk_config.json",
    mime="application/json"
)
