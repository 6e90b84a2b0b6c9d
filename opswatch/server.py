from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
import time
from typing import Callable, Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from .artifacts import ArtifactReader, ArtifactSpec
from .audit import AuditRecorder
from .auth import Authenticator
from .config import GatewayConfig, config_from_env
from .credentials import CredentialStore, build_credential_store
from .errors import ArtifactError, GatewayError
from .monitoring import PROMETHEUS_CONTENT_TYPE, MetricsAggregator
from .pipeline import (
    ACCESS_LOGGER,
    ADMIN_ONLY,
    AUTHENTICATED,
    PUBLIC,
    SERVER_LOGGER,
    AccessGateInterceptor,
    AuditInterceptor,
    InstrumentationInterceptor,
    InterceptorChain,
    RateLimitInterceptor,
    RoutePolicy,
    RouteTable,
    error_response,
)
from .ratelimit import FixedWindowRateLimiter

SERVICE_NAME = "opswatch"
SERVICE_VERSION = "1.0.0"

if not ACCESS_LOGGER.handlers:
    _access_handler = logging.StreamHandler()
    _access_handler.setFormatter(logging.Formatter("%(message)s"))
    ACCESS_LOGGER.addHandler(_access_handler)
ACCESS_LOGGER.setLevel(logging.INFO)
ACCESS_LOGGER.propagate = False


def _artifact_specs(config: GatewayConfig) -> dict[str, ArtifactSpec]:
    files = config.artifacts
    return {
        "metrics": ArtifactSpec("metrics", config.artifact_path(files.metrics_file), files.metrics_limit),
        "alerts": ArtifactSpec("alerts", config.artifact_path(files.alerts_file), files.alerts_limit),
        "security": ArtifactSpec("security", config.artifact_path(files.security_file), files.security_limit),
        "process_health": ArtifactSpec("process_health", config.artifact_path(files.process_health_file), 1),
        "system": ArtifactSpec("system", config.artifact_path(files.system_file), files.system_limit),
        "audit": ArtifactSpec("audit", config.audit_path(), files.audit_limit),
    }


def create_app(
    config: GatewayConfig | None = None,
    *,
    credential_store: CredentialStore | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> FastAPI:
    config = config if config is not None else config_from_env()
    store = credential_store if credential_store is not None else build_credential_store(config)
    if config.jwt_secret:
        SERVER_LOGGER.warning(
            "JWT_SECRET is set but API tokens are matched against the credential table; "
            "the secret is not used to verify them"
        )

    routes = RouteTable(default=AUTHENTICATED)
    metrics = MetricsAggregator(namespace=SERVICE_NAME, clock=clock)
    limits = config.rate_limit
    limiter = None
    if limits.enabled:
        limiter = FixedWindowRateLimiter(
            max_requests=limits.max_requests,
            window_sec=limits.window_sec,
            stripes=limits.stripes,
            max_windows_per_stripe=limits.max_windows_per_stripe,
            clock=clock,
        )
    recorder = AuditRecorder(config.audit_path(), timeout_sec=config.audit.append_timeout_sec)
    reader = ArtifactReader(
        _artifact_specs(config),
        timeout_sec=config.artifacts.read_timeout_sec,
        max_workers=config.artifacts.read_workers,
    )
    authenticator = Authenticator(store)
    chain = InterceptorChain(
        [
            RateLimitInterceptor(limiter, trust_forwarded_for=limits.trust_forwarded_for),
            InstrumentationInterceptor(metrics, routes, trust_forwarded_for=limits.trust_forwarded_for),
            AuditInterceptor(recorder, authenticator, trust_forwarded_for=limits.trust_forwarded_for),
            AccessGateInterceptor(authenticator, routes),
        ]
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        SERVER_LOGGER.info(
            "%s instance=%s log_dir=%s credentials=%d",
            SERVICE_NAME,
            config.instance_name,
            config.log_dir,
            len(store),
        )
        try:
            yield
        finally:
            reader.close()
            recorder.close()

    app = FastAPI(
        title="opswatch monitoring API",
        version=SERVICE_VERSION,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.config = config
    app.state.metrics = metrics
    app.state.rate_limiter = limiter
    app.state.audit = recorder
    app.state.artifacts = reader
    app.state.routes = routes
    app.state.pipeline = chain

    @app.middleware("http")
    async def _request_pipeline(request: Request, call_next):
        return await chain.dispatch(request, call_next)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.exception_handler(ArtifactError)
    async def _artifact_error(request: Request, exc: ArtifactError):
        SERVER_LOGGER.error(
            "Artifact read failed artifact=%s path=%s request_path=%s: %s",
            exc.artifact,
            exc.path,
            request.url.path,
            exc.detail,
        )
        return error_response(exc)

    @app.exception_handler(GatewayError)
    async def _gateway_error(_request: Request, exc: GatewayError):
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        SERVER_LOGGER.info("Invalid request parameters path=%s errors=%d", request.url.path, len(exc.errors()))
        return JSONResponse(status_code=422, content={"error": "invalid request parameters"})

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(_request: Request, exc: StarletteHTTPException):
        message = "not found" if exc.status_code == 404 else str(exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"error": message}, headers=exc.headers)

    def route(path: str, policy: RoutePolicy):
        routes.register(path, policy)
        return app.get(path)

    max_limit = config.artifacts.max_limit

    @route("/health", PUBLIC)
    async def health():
        return {
            "instance": config.instance_name,
            "status": "OK",
            "time": datetime.now(timezone.utc).isoformat(),
        }

    @route("/metrics/prometheus", PUBLIC)
    async def prometheus_metrics():
        return Response(content=metrics.snapshot_prometheus(), media_type=PROMETHEUS_CONTENT_TYPE)

    @route("/api/info", PUBLIC)
    async def api_info():
        return {
            "name": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "instance": config.instance_name,
            "endpoints": [
                {"method": "GET", "path": path, "access": policy.describe()}
                for path, policy in routes.items()
            ],
        }

    @route("/metrics", AUTHENTICATED)
    async def pipeline_metrics(limit: Optional[int] = Query(default=None, ge=1, le=max_limit)):
        records = await reader.records("metrics", limit)
        return {"metrics": records, "count": len(records)}

    @route("/metrics/application", AUTHENTICATED)
    async def application_metrics():
        return metrics.snapshot_application().to_dict()

    @route("/health/processes", AUTHENTICATED)
    async def process_health():
        document = await reader.document("process_health")
        return {"processes": document if document is not None else {}}

    @route("/alerts", AUTHENTICATED)
    async def alerts(limit: Optional[int] = Query(default=None, ge=1, le=max_limit)):
        lines = await reader.lines("alerts", limit)
        return {"alerts": lines, "count": len(lines)}

    @route("/security", AUTHENTICATED)
    async def security_events(limit: Optional[int] = Query(default=None, ge=1, le=max_limit)):
        lines = await reader.lines("security", limit)
        return {"events": lines, "count": len(lines)}

    @route("/logs/system", ADMIN_ONLY)
    async def system_logs(limit: Optional[int] = Query(default=None, ge=1, le=max_limit)):
        lines = await reader.lines("system", limit)
        return {"logs": lines, "count": len(lines)}

    @route("/logs/audit", ADMIN_ONLY)
    async def audit_logs(limit: Optional[int] = Query(default=None, ge=1, le=max_limit)):
        entries = await reader.records("audit", limit)
        return {"entries": entries, "count": len(entries)}

    return app
