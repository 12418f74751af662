"""
Health, metrics and state HTTP server.

Exposes:
- GET /health: JSON health status (degraded while any store is polling)
- GET /metrics: Prometheus-compatible metrics
- GET /state: counters, notifications and unread count for the subject
"""

from __future__ import annotations

from typing import Any, Callable

from aiohttp import web

from .metrics import MetricsCollector

StatusProvider = Callable[[], dict[str, Any]]


class HealthServer:
    """Lightweight HTTP server over the engine's read model."""

    def __init__(
        self,
        status: StatusProvider,
        state: StatusProvider,
        host: str = "127.0.0.1",
        port: int = 9091,
        metrics: MetricsCollector | None = None,
    ):
        self._status = status
        self._state = state
        self._host = host
        self._port = port
        self._metrics = metrics or MetricsCollector()
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/metrics", self._metrics_handler)
        app.router.add_get("/state", self._state_handler)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self._status())

    async def _metrics_handler(self, request: web.Request) -> web.Response:
        return web.Response(
            text=self._metrics.to_prometheus(),
            content_type="text/plain",
        )

    async def _state_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self._state())
