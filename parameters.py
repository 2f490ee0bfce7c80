# parameters.py
from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Union

import pandas as pd

__all__ = [
    "ConfigurationError",
    "HazardType",
    "Parameters",
    "MitigationConfig",
    "BufferCounter",
    "ParameterStore",
    "MITIGATION_IDS",
    "DEFAULT_PARAMETERS",
    "DEFAULT_MITIGATIONS",
    "config_for",
    "with_defaults",
    "validate_parameters",
    "validate_mitigation_config",
]

log = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0.0"


class ConfigurationError(ValueError):
    """Rejected parameter, mitigation or run configuration."""


class HazardType(str, Enum):
    RANSOMWARE = "ransomware"
    EQUIPMENT = "equipment"
    SUPPLIER = "supplier"


# Declaration order matters: it is the order the resolver applies reductions.
MITIGATION_IDS = ("backup", "firewall", "buffer", "dual", "maintenance", "redundancy")

# ---------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Parameters:
    """Snapshot of the shared simulation parameters."""
    ransomware_prob: float = 0.02     # daily probability of a ransomware event
    equipment_prob: float = 0.05      # daily probability of an equipment failure
    supplier_prob: float = 0.01       # daily probability of a supplier disruption
    cascade_delay_ms: int = 800       # spacing of cascade hops in the live net
    recovery_factor: int = 3          # days a disrupted stage waits before recovery
    cost_multiplier: float = 1.0      # scales every event cost

    def probability(self, hazard: HazardType) -> float:
        return {
            HazardType.RANSOMWARE: self.ransomware_prob,
            HazardType.EQUIPMENT: self.equipment_prob,
            HazardType.SUPPLIER: self.supplier_prob,
        }[HazardType(hazard)]

    def to_json_dict(self) -> Dict[str, Any]:
        """Camel-case form used by the exported snapshot."""
        return {json_key: getattr(self, name) for name, json_key in _JSON_KEYS.items()}


@dataclass(frozen=True)
class MitigationConfig:
    """Adoption cost and per-hazard reduction factors of one mitigation."""
    id: str
    cost: float
    reductions: Mapping[HazardType, float] = field(default_factory=dict)
    buffer_days: int = 0              # only meaningful for "buffer"

    def reduction(self, hazard: HazardType) -> float:
        return float(self.reductions.get(HazardType(hazard), 0.0))

    def to_json_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"cost": self.cost}
        for hazard, r in self.reductions.items():
            out[f"{HazardType(hazard).value}Reduction"] = r
        if self.buffer_days:
            out["bufferDays"] = self.buffer_days
        return out

    @classmethod
    def from_json_dict(cls, mitigation_id: str, data: Mapping[str, Any]) -> "MitigationConfig":
        # raw values; validate_mitigation_config does the type and range checks
        reductions = {
            hazard: data[f"{hazard.value}Reduction"]
            for hazard in HazardType
            if f"{hazard.value}Reduction" in data
        }
        return cls(
            id=mitigation_id,
            cost=data.get("cost", 0.0),
            reductions=reductions,
            buffer_days=data.get("bufferDays", 0),
        )


@dataclass
class BufferCounter:
    """Remaining buffer-inventory days. Owned by whoever runs the clock (store, live run or one trial)."""
    remaining: int = 0

    @classmethod
    def full(cls, configs: Mapping[str, MitigationConfig], active: Iterable[str]) -> "BufferCounter":
        if "buffer" in set(active):
            return cls(config_for(configs, "buffer").buffer_days)
        return cls(0)

    def available(self) -> bool:
        return self.remaining > 0

    def consume(self) -> None:
        if self.remaining > 0:
            self.remaining -= 1


# ---------------------------
# Defaults
# ---------------------------

DEFAULT_PARAMETERS = Parameters()

DEFAULT_MITIGATIONS: Dict[str, MitigationConfig] = {
    "backup": MitigationConfig("backup", 5000.0, {HazardType.RANSOMWARE: 0.4}),
    "firewall": MitigationConfig("firewall", 3000.0, {HazardType.RANSOMWARE: 0.35}),
    "buffer": MitigationConfig("buffer", 15000.0, {HazardType.SUPPLIER: 0.8}, buffer_days=30),
    "dual": MitigationConfig("dual", 4000.0, {HazardType.SUPPLIER: 0.5}),
    "maintenance": MitigationConfig("maintenance", 6000.0, {HazardType.EQUIPMENT: 0.7}),
    "redundancy": MitigationConfig("redundancy", 25000.0, {HazardType.EQUIPMENT: 0.8}),
}


def config_for(configs: Optional[Mapping[str, MitigationConfig]], mitigation_id: str) -> MitigationConfig:
    """Configured entry for `mitigation_id`, or its documented default when the mapping lacks one."""
    cfg = configs.get(mitigation_id) if configs is not None else None
    return cfg if cfg is not None else DEFAULT_MITIGATIONS[mitigation_id]


def with_defaults(configs: Optional[Mapping[str, MitigationConfig]]) -> Dict[str, MitigationConfig]:
    """Full config mapping: `configs` laid over DEFAULT_MITIGATIONS."""
    return {**DEFAULT_MITIGATIONS, **(configs or {})}

# field name -> JSON (camelCase) name
_JSON_KEYS: Dict[str, str] = {
    "ransomware_prob": "ransomwareProb",
    "equipment_prob": "equipmentProb",
    "supplier_prob": "supplierProb",
    "cascade_delay_ms": "cascadeDelay",
    "recovery_factor": "recoveryFactor",
    "cost_multiplier": "costMultiplier",
}
_FIELD_ALIASES: Dict[str, str] = {**{v: k for k, v in _JSON_KEYS.items()},
                                  **{k: k for k in _JSON_KEYS},
                                  "cascadeDelayMs": "cascade_delay_ms"}

# ---------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------

def _as_number(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    value = float(value)
    if not math.isfinite(value):
        raise ConfigurationError(f"{name} must be finite, got {value!r}")
    return value


def _check_unit_interval(name: str, value: Any) -> float:
    v = _as_number(name, value)
    if not 0.0 <= v <= 1.0:
        raise ConfigurationError(f"{name} must lie in [0, 1], got {v}")
    return v


def _check_whole(name: str, value: Any, minimum: int) -> int:
    v = _as_number(name, value)
    if v != int(v):
        raise ConfigurationError(f"{name} must be a whole number, got {v}")
    if v < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {int(v)}")
    return int(v)


def _coerce_field(name: str, value: Any) -> Union[int, float]:
    if name in ("ransomware_prob", "equipment_prob", "supplier_prob"):
        return _check_unit_interval(name, value)
    if name == "cascade_delay_ms":
        return _check_whole(name, value, 0)
    if name == "recovery_factor":
        return _check_whole(name, value, 1)
    if name == "cost_multiplier":
        v = _as_number(name, value)
        if v < 0.0:
            raise ConfigurationError(f"cost_multiplier must be >= 0, got {v}")
        return v
    raise ConfigurationError(f"Unknown parameter: {name!r}")


def validate_parameters(p: Parameters) -> Parameters:
    """Return a normalised copy of `p` or raise ConfigurationError."""
    return Parameters(**{name: _coerce_field(name, getattr(p, name)) for name in _JSON_KEYS})


def validate_mitigation_config(cfg: MitigationConfig) -> MitigationConfig:
    if cfg.id not in MITIGATION_IDS:
        raise ConfigurationError(f"Unknown mitigation id: {cfg.id!r}")
    cost = _as_number(f"{cfg.id}.cost", cfg.cost)
    if cost < 0.0:
        raise ConfigurationError(f"{cfg.id}.cost must be >= 0, got {cost}")
    reductions: Dict[HazardType, float] = {}
    for hazard, r in cfg.reductions.items():
        try:
            hz = HazardType(hazard)
        except ValueError:
            raise ConfigurationError(f"{cfg.id}: unknown hazard {hazard!r}") from None
        reductions[hz] = _check_unit_interval(f"{cfg.id}.{hz.value}Reduction", r)
    buffer_days = _check_whole(f"{cfg.id}.buffer_days", cfg.buffer_days, 0)
    return MitigationConfig(id=cfg.id, cost=cost, reductions=reductions, buffer_days=buffer_days)


def resolve_parameter_name(name: str) -> str:
    try:
        return _FIELD_ALIASES[name]
    except KeyError:
        raise ConfigurationError(f"Unknown parameter: {name!r}") from None


def check_mitigation_id(mitigation_id: str) -> str:
    if mitigation_id not in MITIGATION_IDS:
        raise ConfigurationError(
            f"Unknown mitigation id: {mitigation_id!r} (expected one of {', '.join(MITIGATION_IDS)})"
        )
    return mitigation_id

# ---------------------------------------------------------------------
# Shared mutable state (explicit context object)
# ---------------------------------------------------------------------

class ParameterStore:
    """
    Process-lifetime parameter and mitigation state.

    Every mutation goes through a validating setter. Readers take a
    `snapshot()` (frozen Parameters) at the start of an operation and never
    re-read mid-computation.
    """

    def __init__(
        self,
        parameters: Optional[Parameters] = None,
        mitigation_configs: Optional[Mapping[str, MitigationConfig]] = None,
        active: Iterable[str] = (),
    ):
        self._params = validate_parameters(parameters or DEFAULT_PARAMETERS)
        configs = dict(DEFAULT_MITIGATIONS)
        for mid, cfg in (mitigation_configs or {}).items():
            check_mitigation_id(mid)
            configs[mid] = validate_mitigation_config(cfg)
        self._configs: Dict[str, MitigationConfig] = configs
        self._active: set = set()
        self.buffer = BufferCounter()
        for mid in active:
            self.enable_mitigation(mid)

    # --- parameters ---
    def snapshot(self) -> Parameters:
        return self._params

    def set_parameter(self, name: str, value: Any) -> Parameters:
        field_name = resolve_parameter_name(name)
        coerced = _coerce_field(field_name, value)
        self._params = replace(self._params, **{field_name: coerced})
        log.info("parameter %s set to %s", field_name, coerced)
        return self._params

    def update(self, **values: Any) -> Parameters:
        """Validate every value first, then apply all of them at once."""
        coerced = {}
        for name, value in values.items():
            field_name = resolve_parameter_name(name)
            coerced[field_name] = _coerce_field(field_name, value)
        self._params = replace(self._params, **coerced)
        if coerced:
            log.info("parameters updated: %s", coerced)
        return self._params

    # --- mitigations ---
    def active_mitigations(self) -> FrozenSet[str]:
        return frozenset(self._active)

    def mitigation_configs(self) -> Dict[str, MitigationConfig]:
        return dict(self._configs)

    def is_active(self, mitigation_id: str) -> bool:
        return check_mitigation_id(mitigation_id) in self._active

    def enable_mitigation(self, mitigation_id: str) -> None:
        check_mitigation_id(mitigation_id)
        self._active.add(mitigation_id)
        if mitigation_id == "buffer":
            self.buffer.remaining = self._configs["buffer"].buffer_days
        log.info("mitigation %s enabled", mitigation_id)

    def disable_mitigation(self, mitigation_id: str) -> None:
        check_mitigation_id(mitigation_id)
        self._active.discard(mitigation_id)
        if mitigation_id == "buffer":
            self.buffer.remaining = 0
        log.info("mitigation %s disabled", mitigation_id)

    def toggle_mitigation(self, mitigation_id: str) -> bool:
        """Flip a mitigation on/off; returns the new state."""
        if self.is_active(mitigation_id):
            self.disable_mitigation(mitigation_id)
            return False
        self.enable_mitigation(mitigation_id)
        return True

    def set_mitigation_config(self, cfg: MitigationConfig) -> None:
        self._configs[cfg.id] = validate_mitigation_config(cfg)
        log.info("mitigation config %s replaced", cfg.id)

    def refill_buffer(self) -> None:
        """Back to full capacity if buffer is active, else 0."""
        self.buffer.remaining = (
            self._configs["buffer"].buffer_days if "buffer" in self._active else 0
        )

    @property
    def buffer_days_remaining(self) -> int:
        return self.buffer.remaining

    # --- serialisation ---
    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "timestamp": pd.Timestamp.now(tz="UTC").isoformat(),
            "parameters": self._params.to_json_dict(),
            "active_mitigations": [m for m in MITIGATION_IDS if m in self._active],
            "mitigations": {mid: cfg.to_json_dict() for mid, cfg in self._configs.items()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ParameterStore":
        """Build a store from an exported config; missing keys take defaults."""
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"config must be a JSON object, got {type(data).__name__}")
        params_block = data.get("parameters") or {}
        if not isinstance(params_block, Mapping):
            raise ConfigurationError("\"parameters\" must be a JSON object")
        values = {resolve_parameter_name(k): v for k, v in params_block.items()}
        params = Parameters(**{**DEFAULT_PARAMETERS.__dict__, **values})

        mitigations_block = data.get("mitigations") or {}
        if not isinstance(mitigations_block, Mapping):
            raise ConfigurationError("\"mitigations\" must be a JSON object")
        configs: Dict[str, MitigationConfig] = {}
        for mid, block in mitigations_block.items():
            check_mitigation_id(mid)
            if not isinstance(block, Mapping):
                raise ConfigurationError(f"mitigation {mid!r} must be a JSON object")
            merged = {**DEFAULT_MITIGATIONS[mid].to_json_dict(), **block}
            configs[mid] = MitigationConfig.from_json_dict(mid, merged)

        return cls(params, configs, data.get("active_mitigations") or ())

    def save_json(self, path: Union[str, Path]) -> None:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        with p.open("w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load_json(cls, path: Union[str, Path]) -> "ParameterStore":
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f"JSON file does not exist: {p}")
        with p.open("r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))
