from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..credentials import Credential, Identity, Role


class RateLimitConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    window_sec: float = Field(60.0, gt=0.0)
    max_requests: int = Field(500, ge=1)
    trust_forwarded_for: bool = False
    stripes: int = Field(16, ge=1, le=1024)
    max_windows_per_stripe: int = Field(4096, ge=1)


class ArtifactConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    metrics_file: str = "metrics.json"
    alerts_file: str = "alerts.log"
    security_file: str = "security.log"
    process_health_file: str = "process_health.json"
    system_file: str = "system_analysis.log"

    metrics_limit: int = Field(100, ge=1)
    alerts_limit: int = Field(50, ge=1)
    security_limit: int = Field(50, ge=1)
    system_limit: int = Field(100, ge=1)
    audit_limit: int = Field(100, ge=1)
    max_limit: int = Field(1000, ge=1)

    read_timeout_sec: float = Field(5.0, gt=0.0)
    read_workers: int = Field(4, ge=1, le=64)

    @field_validator("metrics_file", "alerts_file", "security_file", "process_health_file", "system_file")
    @classmethod
    def _plain_filename(cls, value: str) -> str:
        name = value.strip()
        if not name:
            raise ValueError("artifact file names must be non-empty")
        if Path(name).name != name:
            raise ValueError("artifact file names must not contain directory components")
        return name

    @model_validator(mode="after")
    def _defaults_within_max(self) -> "ArtifactConfig":
        for field in ("metrics_limit", "alerts_limit", "security_limit", "system_limit", "audit_limit"):
            if getattr(self, field) > self.max_limit:
                raise ValueError(f"artifacts.{field} must not exceed artifacts.max_limit")
        return self


class AuditConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    file: str = "audit.log"
    append_timeout_sec: float = Field(1.0, gt=0.0)


class CredentialSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    token: str = Field(min_length=1)
    username: str = Field(min_length=1)
    role: Role

    def to_credential(self) -> Credential:
        return Credential(token=self.token, identity=Identity(username=self.username, role=self.role))


class GatewayConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    instance_name: str = "opswatch"
    host: str = "0.0.0.0"
    port: int = Field(3000, ge=1, le=65535)
    # Loaded for parity with the deployment environment; tokens are looked up, not verified.
    jwt_secret: Optional[str] = None
    log_dir: str = "./logs"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    artifacts: ArtifactConfig = Field(default_factory=ArtifactConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    credentials: List[CredentialSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_tokens(self) -> "GatewayConfig":
        seen: dict[str, int] = {}
        for index, spec in enumerate(self.credentials):
            if spec.token in seen:
                raise ValueError(
                    f"credentials[{index}] reuses the token of credentials[{seen[spec.token]}]"
                )
            seen[spec.token] = index
        return self

    def artifact_path(self, filename: str) -> Path:
        return Path(self.log_dir) / filename

    def audit_path(self) -> Path:
        return Path(self.log_dir) / self.audit.file
