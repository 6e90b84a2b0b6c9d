from __future__ import annotations

import logging
import os
from typing import Any, Mapping

from .models import GatewayConfig

_LOGGER = logging.getLogger("opswatch.server")


def _raw(environ: Mapping[str, str], name: str) -> str | None:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip()


def _read_positive_int(environ: Mapping[str, str], name: str) -> int | None:
    raw = _raw(environ, name)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        _LOGGER.warning("Invalid %s=%r; ignoring", name, raw)
        return None
    if value <= 0:
        _LOGGER.warning("Invalid %s=%r; must be positive, ignoring", name, raw)
        return None
    return value


def _read_positive_float(environ: Mapping[str, str], name: str) -> float | None:
    raw = _raw(environ, name)
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError:
        _LOGGER.warning("Invalid %s=%r; ignoring", name, raw)
        return None
    if value <= 0.0:
        _LOGGER.warning("Invalid %s=%r; must be positive, ignoring", name, raw)
        return None
    return value


def _read_bool(environ: Mapping[str, str], name: str) -> bool | None:
    raw = _raw(environ, name)
    if raw is None:
        return None
    normalized = raw.lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    _LOGGER.warning("Invalid %s=%r; ignoring", name, raw)
    return None


def _split_list(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def config_from_env(environ: Mapping[str, str] | None = None) -> GatewayConfig:
    """Build the gateway config from ``OPSWATCH_CONFIG`` plus environment overrides.

    Plain deployment variables (``INSTANCE_NAME``, ``PORT``, ``JWT_SECRET``,
    ``LOG_DIR``) are honoured alongside the ``OPSWATCH_*`` ones. Malformed
    numeric or boolean values are logged and ignored.
    """
    from . import load_config, parse_config

    env = os.environ if environ is None else environ
    data: dict[str, Any] = {}
    config_path = _raw(env, "OPSWATCH_CONFIG")
    if config_path:
        data = dict(load_config(config_path))

    for name, key in (("INSTANCE_NAME", "instance_name"), ("JWT_SECRET", "jwt_secret"), ("LOG_DIR", "log_dir")):
        value = _raw(env, name)
        if value is not None:
            data[key] = value
    host = _raw(env, "OPSWATCH_HOST")
    if host is not None:
        data["host"] = host
    port = _read_positive_int(env, "PORT")
    if port is not None:
        data["port"] = port
    origins = _raw(env, "OPSWATCH_CORS_ORIGINS")
    if origins is not None:
        data["cors_origins"] = _split_list(origins)

    rate_limit = dict(data.get("rate_limit") or {})
    max_requests = _read_positive_int(env, "OPSWATCH_RATE_LIMIT_MAX")
    if max_requests is not None:
        rate_limit["max_requests"] = max_requests
    window_sec = _read_positive_float(env, "OPSWATCH_RATE_LIMIT_WINDOW_SEC")
    if window_sec is not None:
        rate_limit["window_sec"] = window_sec
    trust_forwarded = _read_bool(env, "OPSWATCH_TRUST_FORWARDED_FOR")
    if trust_forwarded is not None:
        rate_limit["trust_forwarded_for"] = trust_forwarded
    enabled = _read_bool(env, "OPSWATCH_RATE_LIMIT_ENABLED")
    if enabled is not None:
        rate_limit["enabled"] = enabled
    if rate_limit:
        data["rate_limit"] = rate_limit

    artifacts = dict(data.get("artifacts") or {})
    read_timeout = _read_positive_float(env, "OPSWATCH_READ_TIMEOUT_SEC")
    if read_timeout is not None:
        artifacts["read_timeout_sec"] = read_timeout
    if artifacts:
        data["artifacts"] = artifacts

    return parse_config(data)
