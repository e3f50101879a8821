"""
Entry point for the gateway service.

Serves the latest cached summary, recent trade history and a websocket
relay of the live update channel.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import asyncpg
from aiohttp import web
import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError

from shared.framework.health import HealthCheck
from shared.framework.service import AsyncService
from shared.schemas.updates import PriceUpdate, cache_keys, decode_price_update
from shared.storage.postgres import PostgresClient
from shared.storage.redis import RedisClient
from shared.utils.errors import ConfigurationError
from shared.utils.logging import setup_logging
from shared.utils.tracing import setup_tracing

from .config import GatewayConfig
from .policy import RecommendationPolicy
from .relay import RelayClient, UpdateRelay

logger = structlog.get_logger(__name__)

CACHE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)
STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


def _as_float(raw: Optional[str]) -> float:
    if raw is None:
        return 0.0
    try:
        return float(raw)
    except (TypeError, ValueError):
        return 0.0


class GatewayService(AsyncService):
    """Read API and live-update relay in front of the cache and the store."""

    def __init__(self, config: Optional[GatewayConfig] = None) -> None:
        config = config or GatewayConfig()
        super().__init__(config)
        self.config = config

        self.postgres = PostgresClient(config.require_postgres_dsn())
        self.redis = RedisClient(config.database.redis_url)
        self.policy = RecommendationPolicy(
            margin=config.recommendation_margin,
            neutral=config.neutral_signal,
        )
        self.relay = UpdateRelay(queue_size=config.client_queue_size)
        self.latest_updates: Dict[str, PriceUpdate] = {}
        self.relay_task: Optional[asyncio.Task] = None

        self.metrics_requests = self.metrics.create_counter(
            "requests_total",
            "API requests by route and outcome",
            labels=["route", "status"],
        )
        self.metrics_clients = self.metrics.create_gauge(
            "websocket_clients",
            "Connected websocket clients",
        )
        self.metrics_evicted = self.metrics.create_counter(
            "websocket_evictions_total",
            "Websocket clients dropped for falling behind",
        )

        self.health_checker.add_check(
            HealthCheck(
                name="postgres",
                check_func=self.postgres.health_check,
                critical=False,
                description="Time-series store reachable",
            )
        )
        self.health_checker.add_check(
            HealthCheck(
                name="redis",
                check_func=self.redis.health_check,
                description="Cache and pub/sub reachable",
            )
        )

    def create_app(self) -> web.Application:
        app = super().create_app()
        app.middlewares.append(self._cors_middleware)
        return app

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        response = await handler(request)
        if not response.prepared:
            response.headers["Access-Control-Allow-Origin"] = self.config.cors_origin
        return response

    async def _startup_hook(self) -> None:
        """Execute service-specific startup logic."""
        self.relay_task = asyncio.create_task(self._relay_updates(), name="gateway-relay")
        logger.info(
            "Gateway started",
            updates_channel=self.config.updates_channel,
            recommendation_margin=self.config.recommendation_margin,
        )

    async def _shutdown_hook(self) -> None:
        """Execute service-specific shutdown logic."""
        if self.relay_task:
            self.relay_task.cancel()
            await asyncio.gather(self.relay_task, return_exceptions=True)

        self.relay.close()
        await self.redis.close()
        await self.postgres.close()
        logger.info("Gateway stopped")

    def _setup_service_routes(self) -> None:
        """Expose the read API and the websocket relay."""
        if not self.app:
            return

        self.app.router.add_get("/api/v1/latest/{symbol}", self._latest_handler)
        self.app.router.add_get("/api/v1/btc", self._latest_handler)
        self.app.router.add_get("/api/v1/history/{symbol}", self._history_handler)
        self.app.router.add_get("/ws", self._ws_handler)
        self.app.router.add_get("/status", self._status_handler)

    async def read_latest(self, symbol: str) -> Tuple[float, float]:
        """Cached ``(price, sma)`` for a symbol; zeros when unavailable."""
        price_key, sma_key = cache_keys(symbol)
        try:
            price = await self.redis.get(price_key)
            sma = await self.redis.get(sma_key)
        except CACHE_ERRORS as exc:
            logger.warning("Cache read failed", symbol=symbol, error=str(exc) or type(exc).__name__)
            self.metrics_requests.labels(route="latest", status="degraded").inc()
            return 0.0, 0.0
        return _as_float(price), _as_float(sma)

    async def read_history(self, symbol: str) -> List[Dict[str, Any]]:
        """Most recent trades for a symbol, newest first; empty when unavailable."""
        try:
            rows = await self.postgres.fetch(
                f"SELECT time, price FROM {self.config.trades_table} "
                "WHERE symbol = $1 ORDER BY time DESC LIMIT $2",
                symbol,
                self.config.history_limit,
            )
        except STORE_ERRORS as exc:
            logger.warning("History read failed", symbol=symbol, error=str(exc) or type(exc).__name__)
            self.metrics_requests.labels(route="history", status="degraded").inc()
            return []
        return [{"time": row["time"].isoformat(), "price": row["price"]} for row in rows]

    async def _latest_handler(self, request: web.Request) -> web.Response:
        symbol = request.match_info.get("symbol", self.config.default_symbol).upper()
        price, sma = await self.read_latest(symbol)
        self.metrics_requests.labels(route="latest", status="ok").inc()
        return web.json_response(
            {
                "symbol": symbol,
                "price": price,
                "sma": sma,
                "recommendation": self.policy.recommend(price, sma),
            }
        )

    async def _history_handler(self, request: web.Request) -> web.Response:
        symbol = request.match_info["symbol"].upper()
        records = await self.read_history(symbol)
        self.metrics_requests.labels(route="history", status="ok").inc()
        return web.json_response(records)

    async def _ws_handler(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)

        client = self.relay.register()
        self.metrics_clients.set(len(self.relay))
        sender = asyncio.create_task(self._pump(ws, client))
        try:
            # Inbound frames are ignored; reading keeps control frames flowing
            async for _ in ws:
                pass
        finally:
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
            self.relay.unregister(client)
            self.metrics_clients.set(len(self.relay))
            if client.evicted:
                self.metrics_evicted.inc()
        return ws

    async def _pump(self, ws: web.WebSocketResponse, client: RelayClient) -> None:
        while True:
            message = await client.next_message()
            if message is None:
                break
            try:
                await ws.send_str(message)
            except ConnectionResetError:
                break
        await ws.close()

    async def _relay_updates(self) -> None:
        """Forward the update channel to websocket clients, resubscribing on failure."""
        while not self.shutdown_event.is_set():
            try:
                async for raw in self.redis.subscribe(self.config.updates_channel):
                    self.handle_update(raw)
            except CACHE_ERRORS as exc:
                logger.error(
                    "Update channel unavailable",
                    channel=self.config.updates_channel,
                    error=str(exc) or type(exc).__name__,
                    retry_in=self.config.relay_retry_seconds,
                )
            await asyncio.sleep(self.config.relay_retry_seconds)

    def handle_update(self, raw: str) -> int:
        """Relay one channel message verbatim; returns the number of evicted clients."""
        try:
            update = decode_price_update(raw)
        except ValidationError as exc:
            logger.warning("Unrecognised update message", error=str(exc))
        else:
            self.latest_updates[update.symbol] = update

        return self.relay.broadcast(raw)

    async def _status_handler(self, request: web.Request) -> web.Response:
        """Return basic runtime information."""
        data = {
            "service": self.config.service_slug,
            "websocket_clients": len(self.relay),
            "messages_relayed": self.relay.messages_relayed,
            "clients_evicted": self.relay.clients_evicted,
            "latest": {
                symbol: update.model_dump() for symbol, update in self.latest_updates.items()
            },
        }
        return web.json_response(data)


async def main() -> None:
    """Service entrypoint."""
    try:
        config = GatewayConfig()
        config.require_postgres_dsn()
    except ConfigurationError as exc:
        setup_logging("gateway")
        logger.error("Invalid configuration", **exc.to_dict())
        raise SystemExit(2) from exc

    setup_logging(
        "gateway",
        log_level=config.observability.log_level,
        format_type=config.observability.log_format,
    )
    setup_tracing(
        "gateway",
        endpoint=config.observability.otel_endpoint,
        enabled=config.observability.trace_enabled,
    )

    service = GatewayService(config=config)
    await service.run()


if __name__ == "__main__":
    asyncio.run(main())
