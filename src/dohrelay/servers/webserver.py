"""HTTP front end for dohrelay: DoH endpoints plus a small admin JSON API.

This module provides the FastAPI application and helpers to run it under
uvicorn in a background thread. Route handlers only translate HTTP requests
into calls on the shared Services object; all behaviour lives in the
gateway, executor, stats and settings modules.
"""

from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from ..models import CamelModel, Credentials, UpstreamEndpoint
from ..runtime import Services
from ..stats import client_ip_from_headers, format_uptime

logger = logging.getLogger("dohrelay.webserver")

LEGACY_DOH_PATH = "/api/dns-query"
MIN_PASSWORD_LENGTH = 6
_DOH_METHODS = ["GET", "POST", "OPTIONS", "PUT", "DELETE", "PATCH"]


class _Suppress2xxAccessFilter(logging.Filter):
    """Logging filter that drops uvicorn access records for HTTP 2xx responses.

    Inputs:
      - record: logging.LogRecord instance from uvicorn.access.

    Outputs:
      - bool: False for 2xx access records, True otherwise (including when no
        status code can be determined).
    """

    def filter(self, record: logging.LogRecord) -> bool:
        status = getattr(record, "status_code", None)
        if status is None:
            args = getattr(record, "args", None)
            if isinstance(args, dict):
                status = args.get("status_code") or args.get("status")
            elif isinstance(args, (tuple, list)) and args:
                # uvicorn passes the status code as the last positional arg
                status = args[-1]

        try:
            code = int(status)
        except (TypeError, ValueError):
            return True
        return not (200 <= code <= 299)


def install_uvicorn_2xx_suppression() -> None:
    """Attach _Suppress2xxAccessFilter to the uvicorn.access logger once."""

    access_logger = logging.getLogger("uvicorn.access")
    for f in getattr(access_logger, "filters", []):
        if isinstance(f, _Suppress2xxAccessFilter):
            return
    access_logger.addFilter(_Suppress2xxAccessFilter())


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _client_ip(request: Request) -> str:
    peer = request.client.host if request.client else None
    return client_ip_from_headers(request.headers, peer)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


class QueryRequest(CamelModel):
    domain: Optional[str] = None
    type: str = "A"
    use_cache: bool = True


def create_app(services: Services) -> FastAPI:
    """Create the FastAPI app serving DoH and the admin API.

    Inputs:
      - services: Initialized Services container.

    Outputs:
      - FastAPI application exposing:
        - GET/POST/OPTIONS on server.doh_path and /api/dns-query (RFC 8484)
        - POST /api/test-query, GET /api/stats, POST /api/stats/reset,
          GET /api/logs, GET/POST /api/settings, GET /health

    Example:
      >>> from dohrelay.config.config_parser import load_config
      >>> app = create_app(Services.build(load_config({"storage": {"backend": "memory"}})))
    """

    server_cfg = services.config.get("server") or {}
    doh_path = str(server_cfg.get("doh_path") or "/dns-query")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        install_uvicorn_2xx_suppression()
        yield

    app = FastAPI(
        title="dohrelay",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )
    app.state.services = services

    async def doh(request: Request) -> Response:
        """
        Brief: Hand a DoH request to the gateway and relay its response.

        Inputs:
        - request: FastAPI Request

        Outputs:
        - Response carrying the gateway's status, body and headers.
        """
        body = await request.body()
        resp = await run_in_threadpool(
            services.gateway.handle,
            request.method,
            dict(request.query_params),
            dict(request.headers),
            body,
            _client_ip(request),
        )
        return Response(content=resp.body, status_code=resp.status, headers=resp.headers)

    for path in dict.fromkeys([doh_path, LEGACY_DOH_PATH]):
        app.add_api_route(path, doh, methods=_DOH_METHODS, include_in_schema=False)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        """Return liveness plus the reachability of the stats backend."""

        return {
            "status": "ok",
            "server_time": _utc_now_iso(),
            "storageType": services.stats.storage_type_name,
            "backendHealthy": services.stats.health_check(),
        }

    @app.post("/api/test-query")
    def test_query(payload: QueryRequest, request: Request) -> Any:
        """Run one diagnostic query through the executor and record it."""

        if not payload.domain:
            return _error(400, "missing domain parameter")
        result = services.executor.query(payload.domain, payload.type, payload.use_cache)
        services.stats.record_result(result, _client_ip(request))
        return result.as_dict()

    @app.get("/api/stats")
    def get_stats() -> Dict[str, Any]:
        """Aggregate statistics, cache snapshot and uptime."""

        body = services.stats.get_stats().to_json_dict()
        uptime = services.stats.get_uptime()
        body["cache"] = (
            services.cache.snapshot() if services.cache is not None else {"enabled": False}
        )
        body["uptime"] = uptime
        body["uptimeFormatted"] = format_uptime(uptime)
        return body

    @app.post("/api/stats/reset")
    def reset_stats() -> Dict[str, Any]:
        services.stats.clear()
        return {"success": True}

    @app.get("/api/logs")
    def get_logs(limit: int = 100, offset: int = 0) -> Dict[str, Any]:
        logs = services.stats.get_logs(limit, offset)
        return {
            "logs": [r.to_json_dict() for r in logs],
            "total": len(logs),
            "limit": limit,
            "offset": offset,
        }

    def _settings_body() -> Dict[str, Any]:
        return {
            "upstreamServers": [
                u.to_json_dict() for u in services.settings.get_all_upstream_servers()
            ],
            "auth": {"username": services.settings.get_credentials().username},
            "storageType": services.settings.storage_type_name,
        }

    @app.get("/api/settings")
    def get_settings() -> Dict[str, Any]:
        return _settings_body()

    @app.post("/api/settings")
    def update_settings(payload: Dict[str, Any]) -> Any:
        """
        Brief: Replace the upstream registry and/or the admin credentials.

        Inputs:
        - payload: {"upstreamServers": [...]?, "auth": {"username", "password"}?}

        Outputs:
        - Current settings on success; 400 with an error message when an
          upstream lacks name/url or the password is shorter than 6 characters.
        """
        raw_servers = payload.get("upstreamServers")
        auth = payload.get("auth") or {}

        servers: Optional[List[UpstreamEndpoint]] = None
        if isinstance(raw_servers, list):
            servers = []
            for item in raw_servers:
                if not isinstance(item, dict) or not item.get("name") or not item.get("url"):
                    return _error(400, "upstream server entries require name and url")
                try:
                    servers.append(UpstreamEndpoint.model_validate(item))
                except PydanticValidationError as exc:
                    return _error(400, f"invalid upstream server entry: {exc.errors()[0]['msg']}")

        credentials: Optional[Credentials] = None
        if isinstance(auth, dict) and auth.get("username") and auth.get("password"):
            if len(str(auth["password"])) < MIN_PASSWORD_LENGTH:
                return _error(400, f"password must be at least {MIN_PASSWORD_LENGTH} characters")
            credentials = Credentials(username=str(auth["username"]), password=str(auth["password"]))

        if servers is not None:
            services.settings.set_upstream_servers(servers)
        if credentials is not None:
            services.settings.set_credentials(credentials)

        body = _settings_body()
        body["success"] = True
        return body

    return app


class WebServerHandle:
    """Handle for the background uvicorn thread.

    Inputs (constructor):
      - thread: Thread running the uvicorn server loop.
      - server: uvicorn.Server instance (optional).

    Outputs:
      - WebServerHandle instance with stop() and is_running().
    """

    def __init__(self, thread: threading.Thread, server: Any | None = None) -> None:
        self._thread = thread
        self._server = server

    def is_running(self) -> bool:
        return self._thread.is_alive()

    def stop(self, timeout: float = 5.0) -> None:
        """Ask uvicorn to exit and wait for the thread."""

        if self._server is not None:
            self._server.should_exit = True
        self._thread.join(timeout=timeout)


def start_webserver(services: Services) -> WebServerHandle:
    """Start the HTTP server under uvicorn in a daemon thread.

    Inputs:
      - services: Initialized Services container; ``server.host`` and
        ``server.port`` come from its config.

    Outputs:
      - WebServerHandle.

    Example:
      >>> handle = start_webserver(services)
      >>> handle.is_running()
      True
    """

    import uvicorn

    server_cfg = services.config.get("server") or {}
    host = str(server_cfg.get("host", "127.0.0.1"))
    port = int(server_cfg.get("port", 8053))

    if host in ("0.0.0.0", "::"):
        logger.warning(
            "dohrelay is bound to %s; the admin API has no authentication, consider restricting host",
            host,
        )

    app = create_app(services)
    config_uvicorn = uvicorn.Config(app, host=host, port=port, log_level="info", log_config=None)
    server = uvicorn.Server(config_uvicorn)

    def _runner() -> None:
        try:
            server.run()
        except Exception:  # pragma: no cover - environment specific
            logger.exception("Unhandled exception in webserver thread")

    thread = threading.Thread(target=_runner, name="dohrelay-webserver", daemon=True)
    thread.start()

    logger.info("Started dohrelay on %s:%d", host, port)
    return WebServerHandle(thread, server=server)
