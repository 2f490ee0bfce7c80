# engine.py
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from parameters import ConfigurationError, HazardType, MitigationConfig, Parameters, with_defaults
from mitigations import BufferCounter, reduction_factor
from costs import BASE_COSTS, CASCADE_INCREMENTS, CASCADE_MULTIPLIERS, event_cost, percent_change

__all__ = [
    "ModelVariant",
    "SamplerConfig",
    "TrialResult",
    "SimulationResultSet",
    "DistributionStats",
    "Statistics",
    "Histogram",
    "HAZARD_ORDER",
    "run_trial",
    "describe",
    "calculate_statistics",
    "histogram",
    "MonteCarloSampler",
]

log = logging.getLogger(__name__)

# draw columns: one uniform per hazard per day, in this order
HAZARD_ORDER: Tuple[HazardType, ...] = (HazardType.RANSOMWARE, HazardType.EQUIPMENT, HazardType.SUPPLIER)

PERCENTILES: Tuple[Tuple[str, float], ...] = (
    ("p5", 0.05), ("p10", 0.10), ("p25", 0.25), ("median", 0.50),
    ("p75", 0.75), ("p90", 0.90), ("p95", 0.95), ("p99", 0.99),
)

# ---------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------

class ModelVariant(str, Enum):
    STANDARD = "standard"        # base cost, no cascade, no mitigation
    INTEGRATED = "integrated"    # cascade multiplier, no mitigation
    MITIGATED = "mitigated"      # cascade multiplier and mitigation chain


@dataclass(frozen=True)
class SamplerConfig:
    iterations: int = 1000
    horizon_days: int = 30
    batch_size: int = 50
    histogram_bins: int = 20
    seed: Optional[int] = None
    mitigate_frequency: bool = False   # also thin event occurrence on the mitigated variant

    def validate(self) -> "SamplerConfig":
        for name in ("iterations", "horizon_days", "batch_size", "histogram_bins"):
            v = getattr(self, name)
            if isinstance(v, bool) or not isinstance(v, (int, np.integer)):
                raise ConfigurationError(f"{name} must be an integer, got {v!r}")
        if self.iterations < 0:
            raise ConfigurationError(f"iterations must be >= 0, got {self.iterations}")
        if self.horizon_days < 1:
            raise ConfigurationError(f"horizon_days must be >= 1, got {self.horizon_days}")
        if self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.histogram_bins < 1:
            raise ConfigurationError(f"histogram_bins must be >= 1, got {self.histogram_bins}")
        return self

# ---------------------------------------------------------------------
# One trial
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class TrialResult:
    standard: float
    integrated: float
    mitigated: float
    cascades: int      # integrated variant
    events: int        # integrated variant


def run_trial(
    params: Parameters,
    active: Iterable[str],
    configs: Mapping[str, MitigationConfig],
    rng: Optional[np.random.Generator] = None,
    draws: Optional[np.ndarray] = None,
    horizon_days: int = 30,
    mitigate_frequency: bool = False,
) -> TrialResult:
    """
    Simulate one horizon for all three variants.

    The variants share the same uniform draws (shape `(horizon_days, 3)`, one
    column per hazard in HAZARD_ORDER), so differences between them come from
    cost logic alone. Pass `draws` to force a scenario.
    """
    active = frozenset(active)
    configs = with_defaults(configs)
    if draws is None:
        rng = rng if rng is not None else np.random.default_rng()
        draws = rng.random((horizon_days, len(HAZARD_ORDER)))
    draws = np.asarray(draws, dtype=float)
    if draws.ndim != 2 or draws.shape[1] != len(HAZARD_ORDER):
        raise ConfigurationError(f"draws must have shape (days, {len(HAZARD_ORDER)}), got {draws.shape}")

    cm = params.cost_multiplier
    base_p = [params.probability(h) for h in HAZARD_ORDER]
    # buffer capacity is per trial; nothing leaks between trials
    buffer = BufferCounter.full(configs, active)

    standard = integrated = mitigated = 0.0
    cascades = events = 0
    for day in draws:
        for j, hazard in enumerate(HAZARD_ORDER):
            u = day[j]
            fires = u < base_p[j]
            if mitigate_frequency:
                factor = reduction_factor(hazard, active, configs, buffer=buffer, consume=False)
                fires_mitigated = u < base_p[j] * factor
            else:
                fires_mitigated = fires

            if fires:
                standard += BASE_COSTS[hazard] * cm
                integrated += BASE_COSTS[hazard] * CASCADE_MULTIPLIERS[hazard] * cm
                cascades += CASCADE_INCREMENTS[hazard]
                events += 1
            if fires_mitigated:
                mitigated += event_cost(hazard, params, active, configs, buffer=buffer).mitigated

    return TrialResult(standard, integrated, mitigated, cascades, events)

# ---------------------------------------------------------------------
# Result set
# ---------------------------------------------------------------------

def _frozen(values: Sequence[float], dtype=float) -> np.ndarray:
    arr = np.array(values, dtype=dtype)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class SimulationResultSet:
    """Per-trial series of one run. Read-only; the next run replaces it."""
    standard: np.ndarray
    integrated: np.ndarray
    mitigated: np.ndarray
    cascades: np.ndarray
    event_counts: np.ndarray
    requested: int = 0
    cancelled: bool = False

    @classmethod
    def from_trials(cls, trials: Sequence[TrialResult], requested: int = 0,
                    cancelled: bool = False) -> "SimulationResultSet":
        return cls(
            standard=_frozen([t.standard for t in trials]),
            integrated=_frozen([t.integrated for t in trials]),
            mitigated=_frozen([t.mitigated for t in trials]),
            cascades=_frozen([t.cascades for t in trials], dtype=int),
            event_counts=_frozen([t.events for t in trials], dtype=int),
            requested=requested,
            cancelled=cancelled,
        )

    @classmethod
    def empty(cls) -> "SimulationResultSet":
        return cls.from_trials([])

    def __len__(self) -> int:
        return int(self.standard.size)

    def series(self, key: str) -> np.ndarray:
        aliases = {"eventCounts": "event_counts"}
        key = aliases.get(key, key)
        if key not in ("standard", "integrated", "mitigated", "cascades", "event_counts"):
            raise KeyError(f"Unknown result series: {key!r}")
        return getattr(self, key)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            "standard": self.standard,
            "integrated": self.integrated,
            "mitigated": self.mitigated,
            "cascades": self.cascades,
            "event_counts": self.event_counts,
        })

    def to_json_dict(self) -> Dict[str, list]:
        return {
            "standard": self.standard.tolist(),
            "integrated": self.integrated.tolist(),
            "mitigated": self.mitigated.tolist(),
            "cascades": self.cascades.tolist(),
            "eventCounts": self.event_counts.tolist(),
        }

# ---------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class DistributionStats:
    n: int = 0
    mean: float = 0.0
    std_dev: float = 0.0        # population
    min: float = 0.0
    max: float = 0.0
    median: float = 0.0
    p5: float = 0.0
    p10: float = 0.0
    p25: float = 0.0
    p75: float = 0.0
    p90: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    ci95_lower: float = 0.0
    ci95_upper: float = 0.0

    def to_json_dict(self) -> Dict[str, float]:
        d = dict(self.__dict__)
        d["stdDev"] = d.pop("std_dev")
        d["ci95Lower"] = d.pop("ci95_lower")
        d["ci95Upper"] = d.pop("ci95_upper")
        return d


def _percentile(sorted_x: np.ndarray, p: float) -> float:
    """Nearest-rank: element ceil(p*n) - 1 of the ascending values, clamped."""
    n = sorted_x.size
    idx = math.ceil(p * n) - 1
    return float(sorted_x[max(0, min(idx, n - 1))])


def describe(values: Sequence[float]) -> DistributionStats:
    x = np.asarray(values, dtype=float)
    n = int(x.size)
    if n == 0:
        log.debug("empty series; returning zeroed statistics")
        return DistributionStats()
    s = np.sort(x)
    mean = float(np.mean(x))
    sd = float(np.std(x))
    half = 1.96 * sd / math.sqrt(n)
    return DistributionStats(
        n=n,
        mean=mean,
        std_dev=sd,
        min=float(s[0]),
        max=float(s[-1]),
        ci95_lower=mean - half,
        ci95_upper=mean + half,
        **{name: _percentile(s, p) for name, p in PERCENTILES},
    )


@dataclass(frozen=True)
class Statistics:
    standard: DistributionStats
    integrated: DistributionStats
    mitigated: DistributionStats
    cascades: DistributionStats
    event_counts: DistributionStats
    iterations: int
    underestimation_percent: float
    mitigation_effect_percent: float
    value_at_risk: Dict[str, float] = field(default_factory=dict)
    cancelled: bool = False

    def to_json_dict(self) -> Dict[str, object]:
        return {
            "standard": self.standard.to_json_dict(),
            "integrated": self.integrated.to_json_dict(),
            "mitigated": self.mitigated.to_json_dict(),
            "cascades": self.cascades.to_json_dict(),
            "eventCounts": self.event_counts.to_json_dict(),
            "iterations": self.iterations,
            "underestimationPercent": self.underestimation_percent,
            "mitigationEffectPercent": self.mitigation_effect_percent,
            "valueAtRisk": dict(self.value_at_risk),
            "cancelled": self.cancelled,
        }

    def summary_frame(self) -> pd.DataFrame:
        rows = []
        for variant in ModelVariant:
            st: DistributionStats = getattr(self, variant.value)
            rows.append({
                "Model": variant.value.title(),
                "Mean": st.mean,
                "Std dev": st.std_dev,
                "Median": st.median,
                "P95 (VaR)": st.p95,
                "P99": st.p99,
                "Max": st.max,
                "CI95 low": st.ci95_lower,
                "CI95 high": st.ci95_upper,
            })
        return pd.DataFrame(rows)


def calculate_statistics(results: SimulationResultSet) -> Statistics:
    std = describe(results.standard)
    integ = describe(results.integrated)
    mit = describe(results.mitigated)
    return Statistics(
        standard=std,
        integrated=integ,
        mitigated=mit,
        cascades=describe(results.cascades),
        event_counts=describe(results.event_counts),
        iterations=len(results),
        underestimation_percent=percent_change(integ.mean, std.mean),
        mitigation_effect_percent=percent_change(mit.mean, integ.mean),
        value_at_risk={
            "standard95": std.p95,
            "integrated95": integ.p95,
            "mitigated95": mit.p95,
        },
        cancelled=results.cancelled,
    )

# ---------------------------------------------------------------------
# Histograms
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Histogram:
    bins: Tuple[int, ...]
    bin_edges: Tuple[float, ...]
    frequencies: Tuple[float, ...]
    min: float = 0.0
    max: float = 0.0
    bin_width: float = 0.0

    def to_frame(self) -> pd.DataFrame:
        edges = np.asarray(self.bin_edges, dtype=float)
        return pd.DataFrame({
            "left": edges[:-1],
            "right": edges[1:],
            "count": np.asarray(self.bins, dtype=int),
            "frequency": np.asarray(self.frequencies, dtype=float),
        })


def histogram(values: Sequence[float], bins: int = 20) -> Histogram:
    """Equal-width bins from observed min to max; all-equal data collapses to one bin."""
    if isinstance(bins, bool) or not isinstance(bins, (int, np.integer)) or bins < 1:
        raise ConfigurationError(f"bins must be a positive integer, got {bins!r}")
    x = np.asarray(values, dtype=float)
    if x.size == 0:
        return Histogram((), (), ())

    lo, hi = float(x.min()), float(x.max())
    if lo == hi:
        log.debug("degenerate histogram: all %d values equal %s", x.size, lo)
        return Histogram((int(x.size),), (lo, hi + 1.0), (1.0,), lo, hi, 1.0)

    width = (hi - lo) / bins
    idx = np.minimum(np.floor((x - lo) / width).astype(int), bins - 1)
    counts = np.bincount(idx, minlength=bins)
    edges = lo + np.arange(bins + 1) * width
    return Histogram(
        bins=tuple(int(c) for c in counts),
        bin_edges=tuple(float(e) for e in edges),
        frequencies=tuple(float(c) / x.size for c in counts),
        min=lo,
        max=hi,
        bin_width=width,
    )

# ---------------------------------------------------------------------
# Sampler
# ---------------------------------------------------------------------

ProgressCallback = Callable[[float], None]


class MonteCarloSampler:
    """
    Batched, cooperatively scheduled Monte Carlo runs.

    `run()` yields to the event loop after every batch; that is the only
    suspension point. `cancel()` stops the next batch from starting, never a
    batch already in progress, and the partial result set is kept.
    """

    def __init__(self, config: Optional[SamplerConfig] = None):
        self.config = (config or SamplerConfig()).validate()
        self.results: Optional[SimulationResultSet] = None
        self.statistics: Optional[Statistics] = None
        self.running = False
        # polled between batches
        self._cancel_requested = False

    def cancel(self) -> None:
        self._cancel_requested = True

    async def run(
        self,
        params: Parameters,
        active: Iterable[str],
        configs: Mapping[str, MitigationConfig],
        iterations: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_flag: Optional[asyncio.Event] = None,
    ) -> Statistics:
        cfg = self.config
        n = cfg.iterations if iterations is None else iterations
        if isinstance(n, bool) or not isinstance(n, (int, np.integer)) or n < 0:
            raise ConfigurationError(f"iterations must be a non-negative integer, got {n!r}")
        if self.running:
            raise RuntimeError("Monte Carlo run already in progress")

        # snapshot inputs once; trials only read these
        active = frozenset(active)
        configs = with_defaults(configs)
        self._cancel_requested = False
        rng = np.random.default_rng(cfg.seed)

        self.running = True
        trials: List[TrialResult] = []
        cancelled = False
        try:
            while len(trials) < n:
                if self._cancel_requested or (cancel_flag is not None and cancel_flag.is_set()):
                    cancelled = True
                    break
                batch_end = min(len(trials) + cfg.batch_size, n)
                for _ in range(len(trials), batch_end):
                    trials.append(run_trial(
                        params, active, configs, rng=rng,
                        horizon_days=cfg.horizon_days,
                        mitigate_frequency=cfg.mitigate_frequency,
                    ))
                log.debug("batch done: %d/%d trials", len(trials), n)
                if on_progress is not None:
                    on_progress(len(trials) / n)
                await asyncio.sleep(0)
        finally:
            self.running = False

        self.results = SimulationResultSet.from_trials(trials, requested=n, cancelled=cancelled)
        self.statistics = calculate_statistics(self.results)
        if cancelled:
            log.info("Monte Carlo run cancelled after %d/%d trials", len(trials), n)
        else:
            log.info("Monte Carlo run finished: %d trials", len(trials))
        return self.statistics

    def histogram(self, key: str = "integrated", bins: Optional[int] = None) -> Optional[Histogram]:
        if self.results is None:
            return None
        return histogram(self.results.series(key), bins or self.config.histogram_bins)

    def reset(self) -> None:
        self.results = None
        self.statistics = None
