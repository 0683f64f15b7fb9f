"""
Connection manager for realtime-capable sources.

Owns the lifecycle of every push listener: starts them when the engine
starts, reconnects them with exponential backoff after a failure or a
stale period, and stops them on shutdown. Connection status is persisted
under the ``_connection`` key of the source's adapter state so it shows up
in status reports.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Any

import structlog

from src.config.settings import get_settings
from src.ingestion.base_adapter import BaseAdapter, GetSecret, RealtimeCallbacks
from src.ingestion.errors import StoreUnavailableError
from src.ingestion.schemas import ConnectionStatus, IngestItem
from src.observability.metrics import get_metrics
from src.plugins.loader import LoadedPlugin
from src.sources.schemas import SourceConfig
from src.storage.repository import IngestRepository

logger = structlog.get_logger(__name__)

CONNECTION_STATE_KEY = "_connection"

ItemHandler = Callable[[SourceConfig, list[IngestItem]], Awaitable[None]]
LockProvider = Callable[[str], asyncio.Lock]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class Connection:
    """Runtime state of one realtime source."""

    source: SourceConfig
    adapter: BaseAdapter
    live: bool
    status: ConnectionStatus = "connecting"
    connected_at: datetime | None = None
    last_message_at: datetime | None = None
    reconnect_count: int = 0
    backoff_seconds: float = 0.0
    reconnect_task: asyncio.Task | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "live": self.live,
            "connected_at": _iso(self.connected_at),
            "last_message_at": _iso(self.last_message_at),
            "reconnect_count": self.reconnect_count,
        }


class ConnectionManager:
    """
    Starts, monitors and stops realtime listeners.

    A source whose resolved mode is ``realtime`` gets live dispatch: pushed
    items go straight to ``on_items``. Otherwise the listener still runs but
    buffers items for the next poll to drain.
    """

    def __init__(
        self,
        repository: IngestRepository,
        get_secret: GetSecret,
        on_items: ItemHandler,
        health_check_interval: float | None = None,
        max_backoff: float | None = None,
        lock_for: LockProvider | None = None,
    ):
        settings = get_settings()
        self._repo = repository
        self._get_secret = get_secret
        self._on_items = on_items
        self._health_check_interval = (
            health_check_interval or settings.realtime_health_check_interval_seconds
        )
        self._max_backoff = max_backoff or settings.max_backoff_seconds
        self._lock_for = lock_for or self._own_lock
        self._locks: dict[str, asyncio.Lock] = {}
        self._connections: dict[str, Connection] = {}
        self._pending: set[asyncio.Task] = set()
        self._health_task: asyncio.Task | None = None
        self._metrics = get_metrics()

    def _own_lock(self, source_id: str) -> asyncio.Lock:
        lock = self._locks.get(source_id)
        if lock is None:
            lock = self._locks[source_id] = asyncio.Lock()
        return lock

    @staticmethod
    def resolve_mode(source: SourceConfig, plugin: LoadedPlugin) -> str:
        """Effective mode for a source: ``realtime`` or ``poll``."""
        if source.mode == "poll":
            return "poll"
        if source.mode == "realtime" and not plugin.supports_realtime:
            logger.warning(
                "Realtime requested but adapter cannot push, polling instead",
                source_id=source.id,
                adapter_type=source.type,
            )
            return "poll"
        return "realtime" if plugin.supports_realtime else "poll"

    async def start_connection(
        self,
        source: SourceConfig,
        plugin: LoadedPlugin,
        adapter: BaseAdapter,
    ) -> bool:
        """Connect a source's listener. Returns False if nothing was started."""
        if source.id in self._connections:
            logger.warning("Connection already exists", source_id=source.id)
            return False
        if not plugin.supports_realtime:
            return False

        conn = Connection(
            source=source,
            adapter=adapter,
            live=self.resolve_mode(source, plugin) == "realtime",
        )
        self._connections[source.id] = conn
        await self._connect(conn)
        return True

    async def stop_connection(self, source_id: str) -> None:
        conn = self._connections.get(source_id)
        if conn is None:
            return

        if conn.reconnect_task is not None:
            conn.reconnect_task.cancel()
            conn.reconnect_task = None

        if conn.status in ("connected", "connecting", "reconnecting"):
            conn.status = "disconnecting"
            try:
                await conn.adapter.disconnect()
            except Exception as e:
                logger.warning("Disconnect error", source_id=source_id, error=str(e))

        conn.status = "disconnected"
        self._metrics.set_connection_status(source_id, conn.status)
        await self._persist(conn)
        self._connections.pop(source_id, None)
        logger.info("Realtime connection stopped", source_id=source_id)

    async def stop_all(self) -> None:
        """Stop the health monitor and every connection."""
        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

        for task in list(self._pending):
            task.cancel()
        await asyncio.gather(*self._pending, return_exceptions=True)

        await asyncio.gather(
            *(self.stop_connection(source_id) for source_id in list(self._connections)),
            return_exceptions=True,
        )

    def start_health_monitor(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
        self._health_task = asyncio.create_task(
            self._health_loop(), name="realtime-health-monitor"
        )

    def get_status(self) -> dict[str, dict[str, Any]]:
        return {source_id: conn.to_dict() for source_id, conn in self._connections.items()}

    def has_connection(self, source_id: str) -> bool:
        return source_id in self._connections

    def snapshot(self, source_id: str) -> dict[str, Any] | None:
        """Connection status in the shape stored under ``_connection``."""
        conn = self._connections.get(source_id)
        return conn.to_dict() if conn else None

    # Internal

    async def _connect(self, conn: Connection) -> None:
        source = conn.source
        callbacks = RealtimeCallbacks(
            on_items=partial(self._handle_items, source.id) if conn.live else None,
            on_error=partial(self._handle_error, source.id),
            on_disconnect=partial(self._handle_disconnect, source.id),
        )

        conn.status = "connecting"
        try:
            logger.info("Connecting realtime listener", source_id=source.id, live=conn.live)
            await conn.adapter.connect(source, self._get_secret, callbacks)
        except Exception as e:
            logger.error("Realtime connection failed", source_id=source.id, error=str(e))
            self._metrics.record_error(source.type, type(e).__name__)
            conn.status = "disconnected"
            await self._schedule_reconnect(conn)
            return

        conn.status = "connected"
        conn.connected_at = datetime.now(timezone.utc)
        conn.backoff_seconds = 0.0
        conn.reconnect_count = 0
        self._metrics.set_connection_status(source.id, conn.status)
        await self._persist(conn)
        logger.info("Realtime listener connected", source_id=source.id)

    async def _handle_items(self, source_id: str, items: list[IngestItem]) -> None:
        conn = self._connections.get(source_id)
        if conn is None:
            return
        conn.last_message_at = datetime.now(timezone.utc)
        await self._on_items(conn.source, items)

    def _handle_error(self, source_id: str, error: Exception) -> None:
        logger.error("Realtime error", source_id=source_id, error=str(error))

    def _handle_disconnect(self, source_id: str, reason: str) -> None:
        conn = self._connections.get(source_id)
        if conn is None or conn.status == "disconnecting":
            return
        logger.warning("Realtime listener disconnected", source_id=source_id, reason=reason)
        conn.status = "disconnected"
        task = asyncio.create_task(self._schedule_reconnect(conn))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _schedule_reconnect(self, conn: Connection) -> None:
        if conn.source.id not in self._connections:
            return

        conn.reconnect_count += 1
        conn.backoff_seconds = min(self._max_backoff, 2.0 ** conn.reconnect_count)
        conn.status = "reconnecting"
        self._metrics.set_connection_status(conn.source.id, conn.status)
        logger.info(
            "Scheduling reconnect",
            source_id=conn.source.id,
            delay_seconds=conn.backoff_seconds,
            attempt=conn.reconnect_count,
        )
        await self._persist(conn)
        conn.reconnect_task = asyncio.create_task(
            self._reconnect_after(conn, conn.backoff_seconds),
            name=f"reconnect-{conn.source.id}",
        )

    async def _reconnect_after(self, conn: Connection, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._connections.get(conn.source.id) is not conn:
            return
        conn.reconnect_task = None
        await self._connect(conn)

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._health_check_interval)
            await self.check_health()

    async def check_health(self, now: datetime | None = None) -> list[str]:
        """
        Restart connections with no message within their stale timeout.

        Only connections that have received at least one message are
        checked. Returns the ids of connections restarted.
        """
        now = now or datetime.now(timezone.utc)
        restarted = []

        for source_id, conn in list(self._connections.items()):
            if conn.status != "connected" or conn.last_message_at is None:
                continue
            threshold = conn.source.stale_timeout
            if threshold <= 0:
                continue

            idle = (now - conn.last_message_at).total_seconds()
            if idle <= threshold:
                continue

            logger.warning(
                "Connection stale, reconnecting",
                source_id=source_id,
                idle_seconds=round(idle),
            )
            conn.status = "disconnecting"
            try:
                await conn.adapter.disconnect()
            except Exception as e:
                logger.warning("Disconnect error", source_id=source_id, error=str(e))
            conn.status = "disconnected"
            conn.last_message_at = None
            await self._schedule_reconnect(conn)
            restarted.append(source_id)

        return restarted

    async def _persist(self, conn: Connection) -> None:
        """
        Merge connection status into the stored adapter state.

        Holds the source lock so the read-merge-write cannot interleave with
        a poll cycle committing its cursor.
        """
        try:
            async with self._lock_for(conn.source.id):
                state = await self._repo.get_state(conn.source.id)
                state[CONNECTION_STATE_KEY] = conn.to_dict()
                await self._repo.set_state(conn.source.id, state)
        except StoreUnavailableError as e:
            logger.warning(
                "Failed to persist connection state",
                source_id=conn.source.id,
                error=str(e),
            )
