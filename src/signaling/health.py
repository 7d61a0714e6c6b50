"""Health check endpoints for the signaling server.

Provides HTTP endpoints for load balancers, monitoring systems, and
orchestration tools (e.g., Docker healthcheck, Kubernetes liveness probe),
plus Prometheus metrics and a JSON matchmaking summary.
"""

import logging
import time
from typing import Any

from aiohttp import web

from src.signaling.metrics import MetricsCollector, get_metrics_collector

logger = logging.getLogger(__name__)

SERVICE_MESSAGE = "Random Video Chat Server"


@web.middleware
async def cors_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    """Allow browser clients on any origin to poll the HTTP endpoints."""
    response: web.StreamResponse = await handler(request)
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST"
    return response


class HealthCheckHandler:
    """Health check handler for the signaling server.

    Endpoints:
    - /health: service identity check
    - /liveness: process is running
    - /metrics: Prometheus exposition
    - /metrics/summary: JSON summary including matchmaking state
    """

    def __init__(
        self,
        matchmaker: Any = None,
        metrics_collector: MetricsCollector | None = None,
    ) -> None:
        """Initialize health check handler.

        Args:
            matchmaker: Matchmaker instance (optional, for stats)
            metrics_collector: Metrics collector (defaults to the global one)
        """
        self.matchmaker = matchmaker
        self.start_time = time.time()
        self.metrics_collector = metrics_collector or get_metrics_collector()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Response format:
        {
            "status": "ok",
            "message": "Random Video Chat Server"
        }
        """
        return web.json_response({"status": "ok", "message": SERVICE_MESSAGE}, status=200)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns:
            200 OK: Service is alive
        """
        return web.json_response(
            {
                "status": "alive",
                "uptime_seconds": time.time() - self.start_time,
            },
            status=200,
        )

    async def metrics_endpoint(self, request: web.Request) -> web.Response:
        """Prometheus metrics endpoint.

        Returns:
            200 OK: Metrics in Prometheus text format
        """
        try:
            metrics_text = self.metrics_collector.export_prometheus()

            return web.Response(
                text=metrics_text,
                content_type="text/plain",
                charset="utf-8",
                headers={"X-Prometheus-Format": "0.0.4"},
                status=200,
            )

        except Exception as e:
            logger.error(
                "Failed to export metrics",
                extra={"error": str(e)},
                exc_info=True,
            )
            return web.Response(
                text=f"# Error exporting metrics: {e}\n",
                content_type="text/plain",
                status=500,
            )

    async def metrics_summary(self, request: web.Request) -> web.Response:
        """Human-readable metrics summary endpoint.

        Returns:
            200 OK: Metrics and matchmaking stats in JSON format
        """
        try:
            response: dict[str, Any] = {
                "status": "ok",
                "uptime_seconds": time.time() - self.start_time,
                "metrics": self.metrics_collector.get_summary(),
            }
            if self.matchmaker is not None:
                response["matchmaking"] = self.matchmaker.stats()

            return web.json_response(response, status=200)

        except Exception as e:
            logger.error(
                "Failed to generate metrics summary",
                extra={"error": str(e)},
                exc_info=True,
            )
            return web.json_response({"status": "error", "error": str(e)}, status=500)


def setup_health_routes(
    app: web.Application,
    matchmaker: Any = None,
    metrics_collector: MetricsCollector | None = None,
) -> None:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        matchmaker: Matchmaker instance (optional)
        metrics_collector: Metrics collector (optional)
    """
    handler = HealthCheckHandler(matchmaker=matchmaker, metrics_collector=metrics_collector)

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/liveness", handler.liveness_check)
    app.router.add_get("/metrics", handler.metrics_endpoint)
    app.router.add_get("/metrics/summary", handler.metrics_summary)

    logger.info("Health check endpoints configured: /health, /liveness, /metrics, /metrics/summary")
