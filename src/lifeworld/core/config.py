"""
Lifeworld Configuration System
==============================
Centralized, validated configuration with environment variable overrides.
"""

import os
from pathlib import Path
from typing import Optional
from dataclasses import dataclass, field

import yaml

from lifeworld.core.exceptions import ConfigurationError


@dataclass(frozen=True)
class StoreConfig:
    backend: str = "sqlite"  # "sqlite" or "memory"
    path: str = "./data/lifeworld.db"
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class OracleConfig:
    """Similarity oracle (external text-comparison service)."""
    provider: str = "ollama"  # "ollama" | "openai" | "anthropic"
    model: str = "llama3.1"
    url: str = "http://localhost:11434"
    api_key: Optional[str] = None
    timeout_seconds: int = 60
    temperature: float = 0.2
    max_tokens: int = 500
    batch_size: int = 20
    max_candidates: int = 100


@dataclass(frozen=True)
class ConvergenceConfig:
    similarity_threshold: float = 0.85
    absorption_factor: float = 0.3
    invariant_density: int = 80
    invariant_min_occurrences: int = 3
    stats_window: int = 10


@dataclass(frozen=True)
class PredictiveConfig:
    probability_threshold: float = 0.7
    horizon_hours: float = 24.0
    velocity_history: int = 10
    trajectory_limit: int = 50
    forecast_limit: int = 20
    entropy_window: int = 20
    merge_target_probability: float = 0.5
    eta_probability: float = 0.3


@dataclass(frozen=True)
class SchedulerConfig:
    enabled: bool = True
    interval_hours: float = 24.0
    check_interval_seconds: float = 3600.0  # hourly
    run_on_startup: bool = True
    similarity_threshold: float = 0.85
    coherence_window: int = 30
    run_history_size: int = 50


@dataclass(frozen=True)
class MetricsConfig:
    persist_snapshots: bool = True
    snapshot_capacity: int = 500
    drift_window_seconds: int = 3600
    drift_sample_size: int = 50
    max_link_strength: float = 10.0
    complexity_invariant_density: int = 70


@dataclass(frozen=True)
class ObservabilityConfig:
    log_level: str = "INFO"
    json_logs: bool = False


@dataclass(frozen=True)
class ApiConfig:
    host: str = "127.0.0.1"
    port: int = 8120
    api_key: Optional[str] = None
    cors_origins: list[str] = field(default_factory=lambda: ["*"])


@dataclass(frozen=True)
class LifeworldConfig:
    """Root configuration object."""
    version: str = "1.0"
    store: StoreConfig = field(default_factory=StoreConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    convergence: ConvergenceConfig = field(default_factory=ConvergenceConfig)
    predictive: PredictiveConfig = field(default_factory=PredictiveConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


def _env_override(key: str, default):
    """Check for LIFEWORLD_<KEY> environment variable override."""
    env_key = f"LIFEWORLD_{key.upper()}"
    val = os.environ.get(env_key)
    if val is None:
        return default
    # Type coercion based on the default's type
    if isinstance(default, bool):
        return val.lower() in ("true", "1", "yes")
    if isinstance(default, int):
        return int(val)
    if isinstance(default, float):
        return float(val)
    return val


def _section(name: str, cls, raw: dict):
    """Build a frozen section dataclass from YAML values and env overrides."""
    section_raw = raw.get(name) or {}
    defaults = cls()
    kwargs = {}
    for fname in cls.__dataclass_fields__:
        default = section_raw.get(fname, getattr(defaults, fname))
        if isinstance(default, list):
            kwargs[fname] = default
            continue
        try:
            kwargs[fname] = _env_override(f"{name}_{fname}", default)
        except ValueError as exc:
            raise ConfigurationError(
                config_key=f"{name}.{fname}",
                reason=f"Invalid environment override: {exc}",
            )
    return cls(**kwargs)


def _unit_interval(key: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ConfigurationError(
            config_key=key,
            reason=f"Must be within [0, 1], got {value}",
        )


def _positive(key: str, value) -> None:
    if value <= 0:
        raise ConfigurationError(
            config_key=key,
            reason=f"Must be positive, got {value}",
        )


def load_config(path: Optional[Path] = None) -> LifeworldConfig:
    """
    Load configuration from YAML file with environment variable overrides.

    Priority: ENV > YAML > defaults.

    Args:
        path: Path to config.yaml. If None, searches ./config.yaml and the repository root.

    Returns:
        Validated LifeworldConfig instance.

    Raises:
        ConfigurationError: If a value is out of range or of the wrong type.
    """
    if path is None:
        candidates = [
            Path("config.yaml"),
            Path(__file__).parent.parent.parent.parent / "config.yaml",
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break

    raw = {}
    if path is not None and path.exists():
        with open(path) as f:
            loaded = yaml.safe_load(f) or {}
            raw = loaded.get("lifeworld") or {}

    store = _section("store", StoreConfig, raw)
    if store.backend not in ("sqlite", "memory"):
        raise ConfigurationError(
            config_key="store.backend",
            reason=f"Unknown backend '{store.backend}' (expected 'sqlite' or 'memory')",
        )

    oracle = _section("oracle", OracleConfig, raw)
    if oracle.provider not in ("ollama", "openai", "anthropic"):
        raise ConfigurationError(
            config_key="oracle.provider",
            reason=f"Unknown provider '{oracle.provider}'",
        )
    _positive("oracle.batch_size", oracle.batch_size)
    _positive("oracle.max_candidates", oracle.max_candidates)

    convergence = _section("convergence", ConvergenceConfig, raw)
    _unit_interval("convergence.absorption_factor", convergence.absorption_factor)

    predictive = _section("predictive", PredictiveConfig, raw)
    _unit_interval("predictive.probability_threshold", predictive.probability_threshold)

    scheduler = _section("scheduler", SchedulerConfig, raw)
    _positive("scheduler.interval_hours", scheduler.interval_hours)
    _positive("scheduler.check_interval_seconds", scheduler.check_interval_seconds)

    metrics = _section("metrics", MetricsConfig, raw)
    _positive("metrics.snapshot_capacity", metrics.snapshot_capacity)
    _positive("metrics.max_link_strength", metrics.max_link_strength)

    observability = _section("observability", ObservabilityConfig, raw)
    api = _section("api", ApiConfig, raw)

    cors_env = os.environ.get("LIFEWORLD_CORS_ORIGINS")
    if cors_env:
        api = ApiConfig(
            host=api.host,
            port=api.port,
            api_key=api.api_key,
            cors_origins=[o.strip() for o in cors_env.split(",") if o.strip()],
        )

    return LifeworldConfig(
        version=str(raw.get("version", "1.0")),
        store=store,
        oracle=oracle,
        convergence=convergence,
        predictive=predictive,
        scheduler=scheduler,
        metrics=metrics,
        observability=observability,
        api=api,
    )


# Module-level singleton (lazy-loaded)
_CONFIG: Optional[LifeworldConfig] = None


def get_config() -> LifeworldConfig:
    """Get or initialize the global config singleton."""
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = load_config()
    return _CONFIG


def reset_config():
    """Reset the global config singleton (useful for testing)."""
    global _CONFIG
    _CONFIG = None
