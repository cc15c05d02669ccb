"""Configuration loader for Concord."""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional
import os
import yaml

from concord.errors import ConfigError

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "defaults.yaml"
USER_CONFIG_PATH = Path.home() / ".config" / "concord" / "config.yaml"

ROUTABLE_TARGETS = ("knowledge", "reasoning", "deliberation", "hybrid")
SYNTHESIS_STRATEGIES = ("weighted_merge", "consensus", "hierarchical", "simple_merge")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _env_number(data: Dict[str, Any], env: str, section: str, key: str, cast=float) -> None:
    value = os.getenv(env)
    if not value:
        return
    try:
        data.setdefault(section, {})[key] = cast(value)
    except ValueError:
        pass


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    if DEFAULT_CONFIG_PATH.exists():
        data = yaml.safe_load(DEFAULT_CONFIG_PATH.read_text()) or {}
    user_path = path or USER_CONFIG_PATH
    if user_path.exists():
        override = yaml.safe_load(user_path.read_text()) or {}
        data = _deep_merge(data, override)

    # Environment overrides - Router
    _env_number(data, "CONCORD_CONFIDENCE_THRESHOLD", "router", "confidence_threshold")
    _env_number(data, "CONCORD_CACHE_TTL", "router", "cache_ttl_seconds")
    fallback = os.getenv("CONCORD_FALLBACK_TARGET")
    if fallback:
        data.setdefault("router", {})["fallback_target"] = fallback

    # Environment overrides - Orchestrator
    _env_number(data, "CONCORD_MAX_CONCURRENT", "orchestrator", "max_concurrent_tasks", int)
    _env_number(data, "CONCORD_TASK_TIMEOUT", "orchestrator", "task_timeout_seconds")

    # Environment overrides - Deliberation
    _env_number(data, "CONCORD_CONSENSUS_THRESHOLD", "deliberation", "consensus_threshold")

    # Environment overrides - Subsystems
    rag_url = os.getenv("CONCORD_RAG_URL")
    if rag_url:
        data.setdefault("subsystems", {}).setdefault("rag", {})["base_url"] = rag_url
    ollama_url = os.getenv("CONCORD_OLLAMA_URL")
    if ollama_url:
        data.setdefault("subsystems", {}).setdefault("ollama", {})["base_url"] = ollama_url

    audit_path = os.getenv("CONCORD_AUDIT_PATH")
    if audit_path:
        data.setdefault("audit", {})["path"] = audit_path

    return data


def _known(cls, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in (data or {}).items() if k in names and v is not None}


def _require_unit(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ConfigError(f"{name} must be within [0, 1], got {value}")


def _require_positive(name: str, value: float) -> None:
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")


@dataclass(frozen=True)
class RouterSettings:
    confidence_threshold: float = 0.7
    fallback_target: str = "reasoning"
    cache_ttl_seconds: float = 300.0
    cache_sweep_seconds: Optional[float] = None
    history_size: int = 1000

    def __post_init__(self) -> None:
        _require_unit("router.confidence_threshold", self.confidence_threshold)
        if self.fallback_target not in ROUTABLE_TARGETS:
            raise ConfigError(f"router.fallback_target must be one of {ROUTABLE_TARGETS}")
        _require_positive("router.cache_ttl_seconds", self.cache_ttl_seconds)
        if self.cache_sweep_seconds is not None:
            _require_positive("router.cache_sweep_seconds", self.cache_sweep_seconds)
        _require_positive("router.history_size", self.history_size)

    @property
    def sweep_interval(self) -> float:
        return self.cache_sweep_seconds or self.cache_ttl_seconds / 2

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RouterSettings":
        return cls(**_known(cls, data))


@dataclass(frozen=True)
class OrchestratorSettings:
    max_concurrent_tasks: int = 5
    task_timeout_seconds: float = 30.0
    queue_drain_seconds: float = 1.0
    cleanup_interval_seconds: float = 60.0
    completed_retention_seconds: float = 3600.0
    completed_limit: int = 1000

    def __post_init__(self) -> None:
        for f in fields(self):
            _require_positive(f"orchestrator.{f.name}", getattr(self, f.name))

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "OrchestratorSettings":
        return cls(**_known(cls, data))


@dataclass(frozen=True)
class DeliberationSettings:
    consensus_threshold: float = 0.7
    vote_timeout_seconds: float = 20.0
    invite_timeout_seconds: float = 5.0
    max_phase_timeout_seconds: float = 45.0
    phase_success_ratio: float = 0.6
    conflict_threshold: float = 0.3
    history_size: int = 50
    decision_history_size: int = 100

    def __post_init__(self) -> None:
        _require_unit("deliberation.consensus_threshold", self.consensus_threshold)
        _require_unit("deliberation.phase_success_ratio", self.phase_success_ratio)
        _require_unit("deliberation.conflict_threshold", self.conflict_threshold)
        _require_positive("deliberation.vote_timeout_seconds", self.vote_timeout_seconds)
        _require_positive("deliberation.invite_timeout_seconds", self.invite_timeout_seconds)
        _require_positive("deliberation.max_phase_timeout_seconds", self.max_phase_timeout_seconds)
        _require_positive("deliberation.history_size", self.history_size)
        _require_positive("deliberation.decision_history_size", self.decision_history_size)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DeliberationSettings":
        return cls(**_known(cls, data))


@dataclass(frozen=True)
class SynthesisSettings:
    default_strategy: str = "weighted_merge"
    max_length: int = 2000
    source_attribution: bool = True
    include_citations: bool = False
    quality_check: bool = True
    weight_threshold: float = 0.1
    agreement_threshold: float = 0.3
    history_size: int = 500

    def __post_init__(self) -> None:
        if self.default_strategy not in SYNTHESIS_STRATEGIES:
            raise ConfigError(f"synthesis.default_strategy must be one of {SYNTHESIS_STRATEGIES}")
        _require_positive("synthesis.max_length", self.max_length)
        _require_unit("synthesis.weight_threshold", self.weight_threshold)
        _require_unit("synthesis.agreement_threshold", self.agreement_threshold)
        _require_positive("synthesis.history_size", self.history_size)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SynthesisSettings":
        return cls(**_known(cls, data))


@dataclass(frozen=True)
class SubsystemSettings:
    rag: Dict[str, Any] = field(default_factory=dict)
    ollama: Dict[str, Any] = field(default_factory=dict)

    @property
    def rag_url(self) -> str:
        return str(self.rag.get("base_url", "http://localhost:8091"))

    @property
    def ollama_url(self) -> str:
        return str(self.ollama.get("base_url", "http://localhost:11434"))

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SubsystemSettings":
        data = data or {}
        return cls(rag=dict(data.get("rag") or {}), ollama=dict(data.get("ollama") or {}))


@dataclass
class Config:
    raw: Dict[str, Any]

    @property
    def router(self) -> RouterSettings:
        return RouterSettings.from_dict(self.raw.get("router"))

    @property
    def orchestrator(self) -> OrchestratorSettings:
        return OrchestratorSettings.from_dict(self.raw.get("orchestrator"))

    @property
    def deliberation(self) -> DeliberationSettings:
        return DeliberationSettings.from_dict(self.raw.get("deliberation"))

    @property
    def synthesis(self) -> SynthesisSettings:
        return SynthesisSettings.from_dict(self.raw.get("synthesis"))

    @property
    def subsystems(self) -> SubsystemSettings:
        return SubsystemSettings.from_dict(self.raw.get("subsystems"))

    @property
    def audit_path(self) -> Path | None:
        path = (self.raw.get("audit") or {}).get("path")
        return Path(path).expanduser() if path else None

    @property
    def event_history_size(self) -> int:
        return int((self.raw.get("events") or {}).get("history_size", 200))


def get_config() -> Config:
    return Config(load_config())
