"""Prometheus metrics and health endpoint for the missions ledger.

A small aiohttp application serving ``/health`` (JSON) and ``/metrics``
(Prometheus text exposition).
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from aiohttp import web

from .models import PROGRESS, REDEMPTIONS, RedemptionStatus
from .store import where

if TYPE_CHECKING:
    from .main import LedgerApp


class LedgerMetricsServer:
    """Ledger-specific Prometheus metrics endpoint."""

    def __init__(self, app: LedgerApp, host: str = "0.0.0.0", port: int = 28290) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._logger: logging.Logger = app.logger
        self._runner: web.AppRunner | None = None
        self._started_at = time.monotonic()

    def build_app(self) -> web.Application:
        web_app = web.Application()
        web_app.router.add_get("/health", self._health_handler)
        web_app.router.add_get("/metrics", self._metrics_handler)
        return web_app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        self._logger.info("Metrics server listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ══════════════════════════════════════════════════════════
    #  Collection
    # ══════════════════════════════════════════════════════════

    async def collect_metrics(self) -> list[str]:
        """Collect ledger Prometheus metrics."""
        lines: list[str] = []

        # ── Counters ─────────────────────────────────────────
        lines.append(f"ledger_gold_credited_total {self._app.gold_credited_total}")
        lines.append(f"ledger_gold_debited_total {self._app.gold_debited_total}")
        lines.append(f"ledger_tasks_completed_total {self._app.tasks_completed_total}")
        lines.append(f"ledger_days_settled_total {self._app.days_settled_total}")
        lines.append(f"ledger_redemptions_requested_total {self._app.redemptions_requested_total}")
        lines.append(f"ledger_redemptions_resolved_total {self._app.redemptions_resolved_total}")
        lines.append(f"ledger_drift_findings_total {self._app.drift_findings_total}")

        # ── Gauges ───────────────────────────────────────────
        progress = await self._app.store.query(PROGRESS)
        circulating = sum(int(snap.get("availableGold", 0) or 0) for snap in progress)
        lines.append(f"ledger_users {len(progress)}")
        lines.append(f"ledger_gold_circulating {circulating}")
        pending = await self._app.store.count(
            REDEMPTIONS, [where("status", "==", RedemptionStatus.PENDING.value)],
        )
        lines.append(f"ledger_redemptions_pending {pending}")
        return lines

    async def health_details(self) -> dict:
        users = await self._app.store.count(PROGRESS)
        return {
            "status": "healthy",
            "database": self._app.config.database.path,
            "users": users,
            "uptime_seconds": round(time.monotonic() - self._started_at, 1),
        }

    # ══════════════════════════════════════════════════════════
    #  Handlers
    # ══════════════════════════════════════════════════════════

    async def _health_handler(self, request: web.Request) -> web.Response:
        try:
            body = await self.health_details()
        except Exception as exc:
            self._logger.exception("Health check failed")
            return web.json_response({"status": "unhealthy", "error": str(exc)}, status=503)
        return web.json_response(body)

    async def _metrics_handler(self, request: web.Request) -> web.Response:
        lines = await self.collect_metrics()
        return web.Response(text="\n".join(lines) + "\n", content_type="text/plain")
