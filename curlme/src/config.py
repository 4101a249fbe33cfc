from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

HANDLER_WEBSITE_FETCH = "website-fetch"
HANDLER_LOGGING = "logging"
HANDLERS = frozenset({HANDLER_WEBSITE_FETCH, HANDLER_LOGGING})


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace: Namespace whose ConfigMaps are watched.
        event_handler: ``website-fetch`` to enrich annotated ConfigMaps, or
            ``logging`` to only log events.
        workers: Number of reconciliation worker threads.
        max_retries: Requeues allowed per item before it is dropped.
        suppress_stale_updates: Also skip update events for objects created
            before controller start.
    """

    namespace: str = "default"
    event_handler: str = HANDLER_WEBSITE_FETCH
    workers: int = 1
    max_retries: int = 5
    retry_base_delay_seconds: float = 0.005
    retry_max_delay_seconds: float = 1000.0
    cache_sync_timeout_seconds: float = 60.0
    fetch_timeout_seconds: float = 10.0
    suppress_stale_updates: bool = False
    health_port: int = 8080
    log_level: str = "INFO"


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(values: Mapping[str, str], name: str, default: float, *, positive: bool = True) -> float:
    raw = values.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number") from exc
    if positive and value <= 0:
        raise ConfigError(f"{name} must be > 0, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE`` (``default``), ``EVENT_HANDLER`` (``website-fetch``),
        ``WORKERS`` (``1``), ``MAX_RETRIES`` (``5``),
        ``RETRY_BASE_DELAY_SECONDS`` (``0.005``), ``RETRY_MAX_DELAY_SECONDS`` (``1000``),
        ``CACHE_SYNC_TIMEOUT_SECONDS`` (``60``), ``FETCH_TIMEOUT_SECONDS`` (``10``),
        ``SUPPRESS_STALE_UPDATES`` (``false``), ``HEALTH_PORT`` (``8080``),
        ``LOG_LEVEL`` (``INFO``).
    """
    values = env if env is not None else os.environ

    namespace = values.get("WATCH_NAMESPACE", "default").strip()
    if not namespace:
        raise ConfigError("WATCH_NAMESPACE must be a non-empty string")

    event_handler = values.get("EVENT_HANDLER", HANDLER_WEBSITE_FETCH).strip().lower()
    if event_handler not in HANDLERS:
        raise ConfigError(
            f"EVENT_HANDLER must be one of {sorted(HANDLERS)}, got: {event_handler!r}"
        )

    retry_base_delay = env_float(values, "RETRY_BASE_DELAY_SECONDS", 0.005)
    retry_max_delay = env_float(values, "RETRY_MAX_DELAY_SECONDS", 1000.0)
    if retry_max_delay < retry_base_delay:
        raise ConfigError(
            "RETRY_MAX_DELAY_SECONDS must not be smaller than RETRY_BASE_DELAY_SECONDS"
        )

    return ControllerConfig(
        namespace=namespace,
        event_handler=event_handler,
        workers=env_int(values, "WORKERS", 1, minimum=1, maximum=64),
        max_retries=env_int(values, "MAX_RETRIES", 5, minimum=0),
        retry_base_delay_seconds=retry_base_delay,
        retry_max_delay_seconds=retry_max_delay,
        cache_sync_timeout_seconds=env_float(values, "CACHE_SYNC_TIMEOUT_SECONDS", 60.0),
        fetch_timeout_seconds=env_float(values, "FETCH_TIMEOUT_SECONDS", 10.0),
        suppress_stale_updates=parse_bool(values.get("SUPPRESS_STALE_UPDATES")),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        log_level=values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
