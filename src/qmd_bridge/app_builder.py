"""Composable builder for the qmd-bridge Starlette application."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
import json
import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError
from starlette.applications import Starlette
from starlette.responses import JSONResponse, Response
from starlette.routing import Mount, Route

from .auth import authenticate
from .constants import GRACEFUL_SHUTDOWN_TIMEOUT_S
from .errors import BridgeError, IndexInProgress, InvalidRequest
from .mcp_tools import create_mcp_server
from .observability import get_metrics, get_metrics_content_type, tenant_context
from .runtime.signals import install_shutdown_signals
from .services import BridgeServices


if TYPE_CHECKING:
    from starlette.requests import Request

    from .tenants import Tenant


logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    "INVALID_TOKEN": 401,
    "INVALID_REQUEST": 400,
    "INVALID_COMMAND": 400,
    "QUERY_TOO_LONG": 400,
    "TOO_MANY_REQUESTS": 503,
    "EXECUTION_TIMEOUT": 504,
    "EXECUTION_FAILED": 500,
    "INDEX_IN_PROGRESS": 409,
}


class QmdRequest(BaseModel):
    """Body of ``POST /qmd``. Any client-sent collection is ignored."""

    model_config = {"extra": "ignore"}

    command: str
    query: str


def error_response(exc: BridgeError) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": {"code": exc.code, "message": exc.message}},
        status_code=STATUS_BY_CODE.get(exc.code, 500),
    )


class AppBuilder:
    """Builds the ASGI app around one :class:`BridgeServices` instance."""

    def __init__(self, services: BridgeServices, *, install_signals: bool = True) -> None:
        self.services = services
        self.install_signals = install_signals
        self.mcp_http_app = None

    def build(self) -> Starlette:
        mcp = create_mcp_server(self.services)
        self.mcp_http_app = mcp.http_app(path="/", json_response=True, stateless_http=True)

        routes: list[Route | Mount] = [
            Route("/health", endpoint=self._build_health_endpoint(), methods=["GET"]),
            Route("/metrics", endpoint=self._build_metrics_endpoint(), methods=["GET"]),
            Route("/qmd", endpoint=self._build_qmd_endpoint(), methods=["POST"]),
            Route("/index", endpoint=self._build_index_endpoint(), methods=["POST"]),
            Mount("/mcp", app=self.mcp_http_app),
        ]

        app = Starlette(routes=routes, lifespan=self._build_lifespan_manager())
        app.state.services = self.services
        if self.install_signals:
            install_shutdown_signals(app)
        logger.info("qmd-bridge app initialized with %d tenants", len(self.services.registry))
        return app

    def _authenticate(self, request: Request) -> Tenant:
        tenant = authenticate(self.services.registry, request.headers.get("authorization"))
        request.state.tenant = tenant
        return tenant

    def _build_health_endpoint(self):
        async def health_endpoint(_: Request) -> JSONResponse:
            return JSONResponse(self.services.health())

        return health_endpoint

    def _build_metrics_endpoint(self):
        async def metrics_endpoint(_: Request) -> Response:
            return Response(content=get_metrics(), media_type=get_metrics_content_type())

        return metrics_endpoint

    def _build_qmd_endpoint(self):
        async def qmd_endpoint(request: Request) -> JSONResponse:
            try:
                tenant = self._authenticate(request)
                payload = await self._parse_qmd_request(request)
                with tenant_context(tenant.label):
                    result = await self.services.executor.execute(
                        payload.command,
                        payload.query,
                        tenant.collection,
                    )
            except BridgeError as exc:
                tenant = getattr(request.state, "tenant", None)
                logger.warning(
                    "qmd request failed: %s",
                    exc.code,
                    extra={"tenant_label": tenant.label if tenant else None},
                )
                return error_response(exc)
            except Exception:
                logger.exception("Unexpected error while handling /qmd")
                return error_response(BridgeError())

            return JSONResponse(
                {"success": True, "data": result.output, "execution_time": result.elapsed_time_ms},
            )

        return qmd_endpoint

    def _build_index_endpoint(self):
        async def index_endpoint(request: Request) -> JSONResponse:
            try:
                tenant = self._authenticate(request)
            except BridgeError as exc:
                return error_response(exc)

            indexing = self.services.indexing
            if indexing.is_in_progress(tenant.label) or not indexing.trigger_index(tenant):
                return error_response(IndexInProgress())

            logger.info("Index triggered via API for %s (collection=%s)", tenant.label, tenant.collection)
            return JSONResponse(
                {"success": True, "message": f'Indexing started for collection "{tenant.collection}"'},
                status_code=202,
            )

        return index_endpoint

    async def _parse_qmd_request(self, request: Request) -> QmdRequest:
        try:
            body: Any = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise InvalidRequest("Request body is not valid JSON") from exc
        try:
            return QmdRequest.model_validate(body)
        except ValidationError as exc:
            raise InvalidRequest(str(exc)) from exc

    def _build_lifespan_manager(self):
        assert self.mcp_http_app is not None
        mcp_http_app = self.mcp_http_app
        services = self.services

        @asynccontextmanager
        async def combined_lifespan(app: Starlette):
            services.indexing.start(services.registry.list())

            ctx = mcp_http_app.lifespan(app)
            await ctx.__aenter__()

            drained = False

            async def drain(reason: str) -> None:
                nonlocal drained
                if drained:
                    return
                drained = True
                logger.info("Stopping background indexing (%s)", reason)
                await services.indexing.aclose()

            shutdown_monitor: asyncio.Task | None = None
            shutdown_event = getattr(app.state, "shutdown_event", None)
            if isinstance(shutdown_event, asyncio.Event):

                async def watch_shutdown() -> None:
                    await shutdown_event.wait()
                    await services.indexing.stop()

                shutdown_monitor = asyncio.create_task(watch_shutdown())

            try:
                yield
            finally:
                if shutdown_monitor is not None:
                    shutdown_monitor.cancel()
                    with suppress(asyncio.CancelledError):
                        await shutdown_monitor
                try:
                    await asyncio.wait_for(asyncio.shield(drain("lifespan-exit")), timeout=GRACEFUL_SHUTDOWN_TIMEOUT_S)
                except asyncio.TimeoutError:
                    logger.warning("Index drain timed out after %ss", GRACEFUL_SHUTDOWN_TIMEOUT_S)
                try:
                    await ctx.__aexit__(None, None, None)
                except Exception as exc:  # pragma: no cover - best effort cleanup
                    logger.error("Error during lifespan cleanup: %s", exc, exc_info=True)

        return combined_lifespan


def create_app(services: BridgeServices, *, install_signals: bool = True) -> Starlette:
    return AppBuilder(services, install_signals=install_signals).build()
