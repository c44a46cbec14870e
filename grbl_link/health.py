"""Health reporting and the optional HTTP status endpoint."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from aiohttp import web

LOGGER = logging.getLogger(__name__)

StatusProvider = Callable[[], Dict[str, Any]]


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Collects per-component health (serial, dispatcher, link) for `/healthz`."""

    def __init__(self) -> None:
        self._status: Dict[str, ComponentStatus] = {}
        self._lock = asyncio.Lock()
        self._link: Optional[StatusProvider] = None

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            previous = self._status.get(name)
            if previous is not None and previous.healthy != healthy:
                LOGGER.info(
                    "Component %s is now %s (%s)",
                    name,
                    "healthy" if healthy else "unhealthy",
                    detail or "-",
                )
            self._status[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail
            )

    def attach_link_status(self, provider: Optional[StatusProvider]) -> None:
        """Include the connection monitor's live status in snapshots."""

        self._link = provider

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components = [status.as_dict() for status in self._status.values()]

        healthy = all(item["healthy"] for item in components)
        payload: Dict[str, object] = {
            "status": "ok" if healthy else "degraded",
            "components": components,
        }

        if self._link is not None:
            try:
                link = self._link()
            except RuntimeError:
                link = None
            if link is not None:
                payload["link"] = link
                if not link.get("isHealthy", True):
                    payload["status"] = "degraded"

        return payload


class HealthServer:
    """Minimal HTTP server exposing `/healthz` and `/status`."""

    def __init__(
        self,
        reporter: HealthReporter,
        host: str,
        port: int,
        *,
        status_provider: Optional[StatusProvider] = None,
    ) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._status_provider = status_provider
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)
        app.router.add_get("/status", self._handle_status)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)

    async def _handle_status(self, request: web.Request) -> web.Response:
        if self._status_provider is None:
            return web.json_response({"error": "status unavailable"}, status=404)
        return web.json_response(self._status_provider())
