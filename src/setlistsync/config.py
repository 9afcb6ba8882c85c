from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class FreshnessConfig:
    batch_limits: dict[str, int]
    never_synced_uses_created_at: bool
    recent_show_days: int


@dataclass(frozen=True)
class QueueConfig:
    max_attempts: int
    backoff_base_seconds: float
    backoff_max_seconds: float
    delay_bands: list[tuple[int, int]]
    fallback_delay_seconds: int
    exhausted_history: int


@dataclass(frozen=True)
class ExecutorConfig:
    concurrency: int
    poll_seconds: float
    background_workers: bool
    recent_sync_skip_seconds: int
    rate_limit_wait_seconds: float
    rate_limit_max_waits: int


@dataclass(frozen=True)
class SourceLimit:
    max_requests: int
    window_ms: int


@dataclass(frozen=True)
class RateLimitConfig:
    jitter_ms: int
    sources: dict[str, SourceLimit]


@dataclass(frozen=True)
class SourceConfig:
    base_url: str
    timeout_seconds: float
    token_url: str | None = None


@dataclass(frozen=True)
class ReportConfig:
    cache_ttl_seconds: int
    pass_lease_seconds: int


@dataclass(frozen=True)
class WorkerConfig:
    pass_interval_minutes: int


@dataclass(frozen=True)
class Config:
    freshness: FreshnessConfig
    queue: QueueConfig
    executor: ExecutorConfig
    rate_limits: RateLimitConfig
    sources: dict[str, SourceConfig]
    report: ReportConfig
    worker: WorkerConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "freshness": {
        "batch_limits": {
            "artist": 100,
            "show": 50,
            "venue": 30,
        },
        "never_synced_uses_created_at": False,
        "recent_show_days": 2,
    },
    "queue": {
        "max_attempts": 4,
        "backoff_base_seconds": 30.0,
        "backoff_max_seconds": 3600.0,
        "delay_bands": [[9, 0], [7, 60], [5, 300], [3, 900]],
        "fallback_delay_seconds": 1800,
        "exhausted_history": 100,
    },
    "executor": {
        "concurrency": 4,
        "poll_seconds": 5.0,
        "background_workers": True,
        "recent_sync_skip_seconds": 300,
        "rate_limit_wait_seconds": 1.0,
        "rate_limit_max_waits": 10,
    },
    "rate_limits": {
        "jitter_ms": 0,
        "sources": {
            "ticketmaster": {"max_requests": 200, "window_ms": 60000},
            "spotify": {"max_requests": 120, "window_ms": 60000},
            "setlistfm": {"max_requests": 60, "window_ms": 60000},
        },
    },
    "sources": {
        "ticketmaster": {
            "base_url": "https://app.ticketmaster.com/discovery/v2",
            "timeout_seconds": 10.0,
            "token_url": "",
        },
        "spotify": {
            "base_url": "https://api.spotify.com/v1",
            "timeout_seconds": 10.0,
            "token_url": "https://accounts.spotify.com/api/token",
        },
        "setlistfm": {
            "base_url": "https://api.setlist.fm/rest/1.0",
            "timeout_seconds": 10.0,
            "token_url": "",
        },
    },
    "report": {
        "cache_ttl_seconds": 3600,
        "pass_lease_seconds": 900,
    },
    "worker": {
        "pass_interval_minutes": 15,
    },
}


def get_config_path() -> str | None:
    path = os.environ.get("SS_CONFIG_PATH", "").strip()
    return path or None


def load_config(path: str | None = None) -> Config:
    path = path or get_config_path()
    overrides: dict[str, Any] = {}
    if path:
        if not os.path.exists(path):
            raise ConfigError(f"Config file not found: {path}")
        with open(path, "r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError("config file must contain a mapping")
        overrides = loaded
    return build_config(overrides)


def build_config(overrides: dict[str, Any] | None = None) -> Config:
    cfg = _deep_merge(_deep_copy(DEFAULT_CONFIG), overrides or {})
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    if not errors:
        _validate_semantics(cfg, errors)
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        if default:
            sample = default[0]
            for item in value:
                if not isinstance(item, type(sample)):
                    errors.append(f"{path} must be a list of {type(sample).__name__}")
                    break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int) and not isinstance(default, bool):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _validate_semantics(cfg: dict[str, Any], errors: list[str]) -> None:
    for kind, limit in cfg["freshness"]["batch_limits"].items():
        if limit < 0:
            errors.append(f"config.freshness.batch_limits.{kind} must be non-negative")
    if cfg["queue"]["max_attempts"] < 1:
        errors.append("config.queue.max_attempts must be at least 1")
    if cfg["executor"]["concurrency"] < 1:
        errors.append("config.executor.concurrency must be at least 1")
    previous: int | None = None
    for band in cfg["queue"]["delay_bands"]:
        if len(band) != 2 or not all(isinstance(item, int) for item in band):
            errors.append("config.queue.delay_bands entries must be [priority, delay_seconds]")
            return
        if previous is not None and band[0] >= previous:
            errors.append("config.queue.delay_bands must be ordered by descending priority")
            return
        previous = band[0]
    for source, limit in cfg["rate_limits"]["sources"].items():
        if limit["max_requests"] < 1 or limit["window_ms"] < 1:
            errors.append(f"config.rate_limits.sources.{source} must be positive")


def _build_config(cfg: dict[str, Any]) -> Config:
    freshness_cfg = cfg.get("freshness") or {}
    queue_cfg = cfg.get("queue") or {}
    executor_cfg = cfg.get("executor") or {}
    limits_cfg = cfg.get("rate_limits") or {}
    sources_cfg = cfg.get("sources") or {}
    report_cfg = cfg.get("report") or {}
    worker_cfg = cfg.get("worker") or {}

    freshness = FreshnessConfig(
        batch_limits={str(k): int(v) for k, v in (freshness_cfg.get("batch_limits") or {}).items()},
        never_synced_uses_created_at=bool(freshness_cfg.get("never_synced_uses_created_at")),
        recent_show_days=int(freshness_cfg.get("recent_show_days")),
    )

    queue = QueueConfig(
        max_attempts=int(queue_cfg.get("max_attempts")),
        backoff_base_seconds=float(queue_cfg.get("backoff_base_seconds")),
        backoff_max_seconds=float(queue_cfg.get("backoff_max_seconds")),
        delay_bands=[(int(band[0]), int(band[1])) for band in queue_cfg.get("delay_bands") or []],
        fallback_delay_seconds=int(queue_cfg.get("fallback_delay_seconds")),
        exhausted_history=int(queue_cfg.get("exhausted_history")),
    )

    executor = ExecutorConfig(
        concurrency=int(executor_cfg.get("concurrency")),
        poll_seconds=float(executor_cfg.get("poll_seconds")),
        background_workers=bool(executor_cfg.get("background_workers")),
        recent_sync_skip_seconds=int(executor_cfg.get("recent_sync_skip_seconds")),
        rate_limit_wait_seconds=float(executor_cfg.get("rate_limit_wait_seconds")),
        rate_limit_max_waits=int(executor_cfg.get("rate_limit_max_waits")),
    )

    rate_limits = RateLimitConfig(
        jitter_ms=int(limits_cfg.get("jitter_ms")),
        sources={
            str(name): SourceLimit(
                max_requests=int(item.get("max_requests")),
                window_ms=int(item.get("window_ms")),
            )
            for name, item in (limits_cfg.get("sources") or {}).items()
        },
    )

    sources = {
        str(name): SourceConfig(
            base_url=str(item.get("base_url")).rstrip("/"),
            timeout_seconds=float(item.get("timeout_seconds")),
            token_url=str(item.get("token_url")) or None,
        )
        for name, item in sources_cfg.items()
    }

    return Config(
        freshness=freshness,
        queue=queue,
        executor=executor,
        rate_limits=rate_limits,
        sources=sources,
        report=ReportConfig(
            cache_ttl_seconds=int(report_cfg.get("cache_ttl_seconds")),
            pass_lease_seconds=int(report_cfg.get("pass_lease_seconds")),
        ),
        worker=WorkerConfig(pass_interval_minutes=int(worker_cfg.get("pass_interval_minutes"))),
    )


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
