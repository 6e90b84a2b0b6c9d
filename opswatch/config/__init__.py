from __future__ import annotations

import json
from typing import Mapping

from pydantic import ValidationError

from .env import config_from_env
from .models import (
    ArtifactConfig,
    AuditConfig,
    CredentialSpec,
    GatewayConfig,
    RateLimitConfig,
)

__all__ = [
    "ArtifactConfig",
    "AuditConfig",
    "CredentialSpec",
    "GatewayConfig",
    "RateLimitConfig",
    "ValidationError",
    "config_from_env",
    "load_config",
    "parse_config",
]


def load_config(path: str) -> dict:
    if path.endswith(".json"):
        with open(path, "r", encoding="utf-8") as handle:
            return json.load(handle)
    if path.endswith(".yaml") or path.endswith(".yml"):
        try:
            import yaml  # type: ignore
        except Exception as exc:
            raise ImportError(
                "YAML config requires PyYAML. Install with `pip install pyyaml`."
            ) from exc
        with open(path, "r", encoding="utf-8") as handle:
            return yaml.safe_load(handle) or {}
    raise ValueError("Config file must be .json or .yaml")


def parse_config(data: Mapping[str, object]) -> GatewayConfig:
    return GatewayConfig.model_validate(data)
