from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        watch_namespace: Namespace to watch, or ``""`` for all namespaces.
        service_workers / pod_workers / endpoint_workers: Worker threads per
            resource kind.
        resync_period_seconds: Interval of the full re-list that heals missed
            events; ``0`` disables periodic resync.
        watch_timeout_seconds: Server-side timeout of one watch stream.
        retry_base_delay_seconds / retry_max_delay_seconds: Backoff bounds for
            keys whose reconciliation failed.
        health_enabled / health_port: Health and metrics HTTP server.
    """

    watch_namespace: str = ""
    service_workers: int = 2
    pod_workers: int = 4
    endpoint_workers: int = 2
    resync_period_seconds: int = 300
    watch_timeout_seconds: int = 30
    retry_base_delay_seconds: int = 1
    retry_max_delay_seconds: int = 30
    health_enabled: bool = True
    health_port: int = 8080


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
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


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment (see :class:`ControllerConfig`)."""
    values = env if env is not None else os.environ

    retry_base = env_int("RETRY_BASE_DELAY_SECONDS", 1, minimum=1, env=values)
    retry_max = env_int("RETRY_MAX_DELAY_SECONDS", 30, minimum=1, env=values)
    if retry_base > retry_max:
        raise ConfigError(
            "RETRY_BASE_DELAY_SECONDS must not exceed RETRY_MAX_DELAY_SECONDS"
        )

    return ControllerConfig(
        watch_namespace=values.get("WATCH_NAMESPACE", "").strip(),
        service_workers=env_int("SERVICE_WORKERS", 2, minimum=1, env=values),
        pod_workers=env_int("POD_WORKERS", 4, minimum=1, env=values),
        endpoint_workers=env_int("ENDPOINT_WORKERS", 2, minimum=1, env=values),
        resync_period_seconds=env_int("RESYNC_PERIOD_SECONDS", 300, minimum=0, env=values),
        watch_timeout_seconds=env_int("WATCH_TIMEOUT_SECONDS", 30, minimum=1, env=values),
        retry_base_delay_seconds=retry_base,
        retry_max_delay_seconds=retry_max,
        health_enabled=parse_bool(values.get("HEALTH_ENABLED"), default=True),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
    )
