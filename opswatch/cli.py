from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Iterable

from pydantic import ValidationError

from .config import GatewayConfig, config_from_env, load_config


def _load(path: str | None) -> GatewayConfig:
    environ = dict(os.environ)
    if path:
        environ["OPSWATCH_CONFIG"] = path
    return config_from_env(environ)


def _run_validate(path: str) -> int:
    try:
        data = load_config(path)
    except Exception as exc:
        print(f"Config load failed: {exc}")
        return 1

    try:
        cfg = GatewayConfig.model_validate(data)
    except ValidationError as exc:
        print("Config validation failed\n")
        print(exc.json(indent=2))
        return 1

    print("Config is valid")
    print(f"Instance: {cfg.instance_name}")
    print(f"Log dir: {cfg.log_dir}")
    print(f"Credentials: {len(cfg.credentials) or 'built-in defaults'}")
    print(f"Rate limit: {cfg.rate_limit.max_requests} per {cfg.rate_limit.window_sec:g}s")
    return 0


def _run_routes(path: str | None) -> int:
    from .server import create_app

    try:
        cfg = _load(path)
    except (ValidationError, ValueError, OSError) as exc:
        print(f"Config load failed: {exc}")
        return 1
    app = create_app(cfg)
    print("Interceptors: " + " -> ".join(app.state.pipeline.names))
    for route_path, policy in app.state.routes.items():
        print(f"GET {route_path:<24} {policy.describe()}")
    return 0


def _run_serve(path: str | None, host: str | None, port: int | None, log_level: str) -> int:
    import uvicorn

    from .server import create_app

    logging.basicConfig(level=getattr(logging, log_level.upper(), logging.INFO))
    try:
        cfg = _load(path)
    except (ValidationError, ValueError, OSError) as exc:
        print(f"Config load failed: {exc}")
        return 1
    updates = {}
    if host:
        updates["host"] = host
    if port:
        updates["port"] = port
    if updates:
        cfg = cfg.model_copy(update=updates)
    app = create_app(cfg)
    uvicorn.run(app, host=cfg.host, port=cfg.port, log_level=log_level.lower())
    return 0


def main(argv: Iterable[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)

    if argv and argv[0] == "validate":
        parser = argparse.ArgumentParser(description="Validate an opswatch config")
        parser.add_argument("path", help="Path to config file (.json/.yaml)")
        args = parser.parse_args(argv[1:])
        return _run_validate(args.path)
    if argv and argv[0] == "routes":
        parser = argparse.ArgumentParser(description="Print the interceptor order and route access table")
        parser.add_argument("--config", default=None, help="Path to config file (.json/.yaml)")
        args = parser.parse_args(argv[1:])
        return _run_routes(args.config)

    if argv and argv[0] == "serve":
        argv = argv[1:]
    parser = argparse.ArgumentParser(description="Run the opswatch monitoring API")
    parser.add_argument("--config", default=None, help="Path to config file (.json/.yaml)")
    parser.add_argument("--host", default=None, help="Override listen host")
    parser.add_argument("--port", type=int, default=None, help="Override listen port")
    parser.add_argument("--log-level", default="info", help="Logging level")
    args = parser.parse_args(argv)
    return _run_serve(args.config, args.host, args.port, args.log_level)


if __name__ == "__main__":
    sys.exit(main())
