"""Ordered request interceptors and the route access table.

Each interceptor receives the request and a ``call_next`` coroutine. It may
answer on its own (short-circuit), may attach values to ``request.state`` for
later stages, and otherwise must return ``await call_next(request)``. The
chain runs its stages in list order; whatever escapes the chain is turned into
a generic 500 at the chain boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
import math
import time
from typing import Any, Awaitable, Callable, Sequence
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse, Response

from .audit import AuditEntry, AuditRecorder
from .auth import TOKEN_HEADER, Authenticator, authorize
from .credentials import Role
from .errors import AuthError, GatewayError, RateLimited
from .monitoring import MetricsAggregator, RequestEvent
from .ratelimit import FixedWindowRateLimiter

CallNext = Callable[[Request], Awaitable[Response]]

ACCESS_LOGGER = logging.getLogger("opswatch.access")
SERVER_LOGGER = logging.getLogger("opswatch.server")

INTERNAL_ERROR_MESSAGE = "internal server error"
UNMATCHED_ROUTE = "unmatched"


def log_json(logger: logging.Logger, payload: dict[str, Any]) -> None:
    logger.info(json.dumps(payload, sort_keys=True, separators=(",", ":")))


def client_address(request: Request, *, trust_forwarded_for: bool = False) -> str:
    # The trusted proxy appends the peer it saw; everything left of it is caller-supplied.
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
            if hops:
                return hops[-1]
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def error_response(exc: GatewayError, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)


def unhandled_error_response(request: Request, exc: BaseException) -> JSONResponse:
    SERVER_LOGGER.error(
        "Unhandled server error for %s %s",
        request.method,
        request.url.path,
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    return JSONResponse(
        status_code=500,
        content={"error": INTERNAL_ERROR_MESSAGE, "message": "an unexpected error occurred"},
    )


@dataclass(frozen=True)
class RoutePolicy:
    public: bool = False
    required_roles: frozenset[Role] = field(default_factory=frozenset)

    def describe(self) -> str:
        if self.public:
            return "public"
        if self.required_roles:
            return "roles:" + ",".join(sorted(role.value for role in self.required_roles))
        return "authenticated"


PUBLIC = RoutePolicy(public=True)
AUTHENTICATED = RoutePolicy()
ADMIN_ONLY = RoutePolicy(required_roles=frozenset({Role.ADMIN}))


class RouteTable:
    """Access policy per route path, declared when the route is registered."""

    def __init__(self, default: RoutePolicy = AUTHENTICATED) -> None:
        self._default = default
        self._policies: dict[str, RoutePolicy] = {}

    def register(self, path: str, policy: RoutePolicy) -> None:
        if path in self._policies:
            raise ValueError(f"route {path!r} already registered")
        self._policies[path] = policy

    def policy_for(self, path: str) -> RoutePolicy:
        policy = self._policies.get(path)
        if policy is None and len(path) > 1 and path.endswith("/"):
            # Starlette redirects "/health/" to "/health" after the gate runs.
            policy = self._policies.get(path.rstrip("/") or "/")
        return policy if policy is not None else self._default

    def metric_route(self, path: str) -> str:
        return path if path in self._policies else UNMATCHED_ROUTE

    def items(self) -> list[tuple[str, RoutePolicy]]:
        return list(self._policies.items())


class Interceptor:
    name = "interceptor"

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        raise NotImplementedError


class RateLimitInterceptor(Interceptor):
    name = "rate_limit"

    def __init__(self, limiter: FixedWindowRateLimiter | None, *, trust_forwarded_for: bool = False) -> None:
        self._limiter = limiter
        self._trust_forwarded_for = trust_forwarded_for

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        if self._limiter is None:
            return await call_next(request)
        key = client_address(request, trust_forwarded_for=self._trust_forwarded_for)
        decision = self._limiter.hit(key)
        if not decision.allowed:
            SERVER_LOGGER.warning("Rate limit exceeded client=%s path=%s", key, request.url.path)
            retry_after = max(1, math.ceil(decision.reset_after))
            return error_response(
                RateLimited(retry_after=decision.reset_after),
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(decision.limit),
                    "X-RateLimit-Remaining": "0",
                },
            )
        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return response


class InstrumentationInterceptor(Interceptor):
    """Times the rest of the chain and feeds the metrics aggregator and access log."""

    name = "instrumentation"

    def __init__(
        self,
        metrics: MetricsAggregator,
        routes: RouteTable,
        *,
        trust_forwarded_for: bool = False,
    ) -> None:
        self._metrics = metrics
        self._routes = routes
        self._trust_forwarded_for = trust_forwarded_for

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id
        status_code = 500
        start = time.perf_counter()
        with self._metrics.track_connection():
            try:
                response = await call_next(request)
                status_code = response.status_code
            finally:
                duration_ms = (time.perf_counter() - start) * 1000.0
                route = self._routes.metric_route(request.url.path)
                self._metrics.record(
                    RequestEvent(
                        method=request.method,
                        route=route,
                        status_code=status_code,
                        duration_ms=duration_ms,
                        timestamp=self._metrics.now(),
                    )
                )
                identity = getattr(request.state, "identity", None)
                log_json(
                    ACCESS_LOGGER,
                    {
                        "ts": datetime.now(timezone.utc).isoformat(),
                        "event": "access",
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "route": route,
                        "status_code": status_code,
                        "duration_ms": round(duration_ms, 3),
                        "client_ip": client_address(request, trust_forwarded_for=self._trust_forwarded_for),
                        "user": identity.username if identity else None,
                    },
                )
        response.headers["x-request-id"] = request_id
        return response


class AuditInterceptor(Interceptor):
    """Records every request before any authentication decision is made."""

    name = "audit"

    def __init__(
        self,
        recorder: AuditRecorder,
        authenticator: Authenticator,
        *,
        trust_forwarded_for: bool = False,
    ) -> None:
        self._recorder = recorder
        self._authenticator = authenticator
        self._trust_forwarded_for = trust_forwarded_for

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        identity = self._authenticator.identify(request.headers.get(TOKEN_HEADER))
        entry = AuditEntry.now(
            user=identity.username if identity else "anonymous",
            method=request.method,
            path=request.url.path,
            client_address=client_address(request, trust_forwarded_for=self._trust_forwarded_for),
            user_agent=request.headers.get("user-agent", ""),
        )
        try:
            await self._recorder.append(entry)
        except Exception:
            SERVER_LOGGER.exception("Audit recorder failed for %s %s", request.method, request.url.path)
        return await call_next(request)


class AccessGateInterceptor(Interceptor):
    name = "access_gate"

    def __init__(self, authenticator: Authenticator, routes: RouteTable) -> None:
        self._authenticator = authenticator
        self._routes = routes

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        policy = self._routes.policy_for(request.url.path)
        if policy.public:
            return await call_next(request)
        try:
            identity = self._authenticator.authenticate(request.headers.get(TOKEN_HEADER))
            request.state.identity = identity
            authorize(identity, policy.required_roles)
        except AuthError as exc:
            SERVER_LOGGER.info(
                "Access denied status=%d method=%s path=%s",
                exc.status_code,
                request.method,
                request.url.path,
            )
            return error_response(exc)
        return await call_next(request)


class InterceptorChain:
    def __init__(
        self,
        stages: Sequence[Interceptor],
        *,
        on_error: Callable[[Request, BaseException], Response] = unhandled_error_response,
    ) -> None:
        self._stages = tuple(stages)
        self._on_error = on_error

    @property
    def names(self) -> list[str]:
        return [stage.name for stage in self._stages]

    async def _call(self, index: int, request: Request, endpoint: CallNext) -> Response:
        if index >= len(self._stages):
            return await endpoint(request)
        stage = self._stages[index]

        async def call_next(next_request: Request) -> Response:
            return await self._call(index + 1, next_request, endpoint)

        return await stage(request, call_next)

    async def dispatch(self, request: Request, endpoint: CallNext) -> Response:
        try:
            return await self._call(0, request, endpoint)
        except Exception as exc:
            return self._on_error(request, exc)
