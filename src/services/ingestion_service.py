"""
Ingestion service - runs the poll scheduler over every enabled source.

One long-lived task per source polls it on its interval, so a source is
never polled concurrently with itself. Each cycle:

1. Load the source's adapter state (empty for a new source)
2. Call ``adapter.poll`` under the process-level timeout
3. Filter, dedup, download attachments, create the work item, record it
4. Poll replies for tracked threads
5. Persist the returned state, then append a poll-log row

State is written only after the whole batch has been accepted. A crash in
between replays the batch on restart and the dedup store absorbs it.

Features:
- Per-source exponential backoff after failures
- Staggered startup and periodic config reconciliation
- Realtime listeners owned by the ConnectionManager
- Dry-run mode (filter and dedup only)
- Metrics and tracing per cycle
"""

import asyncio
import copy
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.config.settings import get_settings
from src.ingestion.base_adapter import BaseAdapter, GetSecret
from src.ingestion.downloader import AttachmentDownloader
from src.ingestion.errors import (
    ConfigurationError,
    SecretNotFoundError,
    StoreUnavailableError,
    TransientSourceError,
)
from src.ingestion.filters import apply_filter, resolve_filter
from src.ingestion.result import Err, Ok, Result
from src.ingestion.schemas import (
    Attachment,
    IngestItem,
    PollResult,
    SendResult,
    TestResult,
    TrackedThread,
)
from src.ingestion.secrets import get_secret as default_get_secret
from src.ingestion.tasks import TaskCreator
from src.observability.metrics import get_metrics
from src.observability.tracing import get_tracer, traced
from src.plugins.loader import LoadedPlugin, PluginRegistry
from src.realtime.connection_manager import CONNECTION_STATE_KEY, ConnectionManager
from src.sources.schemas import SourceConfig
from src.sources.service import SourceConfigProvider, validate_source
from src.storage.repository import IngestRepository

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)


@dataclass
class CycleReport:
    """Outcome of one poll cycle or one realtime batch."""

    source_id: str
    found: int = 0
    filtered: int = 0
    duplicates: int = 0
    new: int = 0
    replies: int = 0
    error: str | None = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SourceRuntime:
    """Scheduler bookkeeping for one running source."""

    source: SourceConfig
    plugin: LoadedPlugin
    adapter: BaseAdapter
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    task: asyncio.Task | None = None
    consecutive_errors: int = 0
    backoff_seconds: float = 0.0
    last_report: CycleReport | None = None


class IngestionService:
    """
    Service that orchestrates polling and realtime ingestion for all sources.

    Usage:
        service = IngestionService(repository, task_creator)
        await service.start()  # Runs until stop() or the store is lost
    """

    def __init__(
        self,
        repository: IngestRepository,
        task_creator: TaskCreator,
        registry: PluginRegistry | None = None,
        config_provider: SourceConfigProvider | None = None,
        get_secret: GetSecret | None = None,
        downloader: AttachmentDownloader | None = None,
        dry_run: bool = False,
        source_ids: list[str] | None = None,
    ):
        """
        Initialize ingestion service.

        Args:
            repository: Dedup and state store
            task_creator: Sink for accepted items
            registry: Plugin registry (discovers on start)
            config_provider: Source configuration provider
            get_secret: Secret resolver handed to adapters
            downloader: Attachment downloader
            dry_run: Filter and dedup only, never create work items
            source_ids: Restrict the service to these sources
        """
        settings = get_settings()

        self._repo = repository
        self._tasks = task_creator
        self._registry = registry or PluginRegistry()
        self._config = config_provider or SourceConfigProvider()
        self._get_secret = get_secret or default_get_secret
        self._downloader = downloader or AttachmentDownloader()
        self._dry_run = dry_run
        self._source_ids = set(source_ids) if source_ids else None

        self._stagger = settings.poll_stagger_seconds
        self._config_interval = settings.config_check_interval_seconds
        self._max_backoff = settings.max_backoff_seconds
        self._poll_timeout = settings.poll_timeout_seconds

        self._runtimes: dict[str, SourceRuntime] = {}
        self._source_locks: dict[str, asyncio.Lock] = {}
        self._connections = ConnectionManager(
            repository=repository,
            get_secret=self._get_secret,
            on_items=self.handle_realtime_items,
            lock_for=self.lock_for,
        )
        self._config_task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self._fatal: StoreUnavailableError | None = None
        self._running = False
        self._metrics = get_metrics()

        logger.info("Ingestion service initialized", dry_run=dry_run)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def connections(self) -> ConnectionManager:
        return self._connections

    def lock_for(self, source_id: str) -> asyncio.Lock:
        """
        The lock serialising all state access for one source.

        Shared by scheduled cycles, one-off cycles, realtime batches and
        connection status writes, and kept across source restarts.
        """
        lock = self._source_locks.get(source_id)
        if lock is None:
            lock = self._source_locks[source_id] = asyncio.Lock()
        return lock

    # ── Lifecycle ───────────────────────────────────────────────

    async def start(self) -> None:
        """
        Start every enabled source and run until stopped.

        Raises:
            StoreUnavailableError: If the durable store is lost while running
        """
        self._running = True
        self._fatal = None
        self._stop_event = asyncio.Event()

        plugins = self._registry.discover()
        failed = self._registry.failed
        self._metrics.set_plugin_counts(len(plugins), len(failed))
        if plugins:
            logger.info("Plugins discovered", plugins=sorted(plugins))
        else:
            logger.warning("No plugins discovered")

        self._connections.start_health_monitor()

        try:
            sources = self._selected_sources()
            if not sources:
                logger.warning("No enabled sources found")
            for index, source in enumerate(sources):
                await self._start_source(source, initial_delay=index * self._stagger)

            self._config_task = asyncio.create_task(
                self._config_loop(), name="config-reconcile"
            )
            await self._stop_event.wait()
        finally:
            await self._cleanup()

        if self._fatal is not None:
            raise self._fatal

    async def stop(self) -> None:
        """Stop the service gracefully."""
        logger.info("Stopping ingestion service")
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    async def _cleanup(self) -> None:
        self._running = False
        if self._config_task is not None:
            self._config_task.cancel()
            await asyncio.gather(self._config_task, return_exceptions=True)
            self._config_task = None

        for source_id in list(self._runtimes):
            await self._stop_source(source_id)
        await self._connections.stop_all()
        logger.info("Ingestion service stopped")

    def _halt(self, error: StoreUnavailableError) -> None:
        logger.error("Store unavailable, halting engine", error=str(error))
        self._fatal = error
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    def _selected_sources(self) -> list[SourceConfig]:
        sources = self._config.enabled_sources()
        if self._source_ids is not None:
            sources = [s for s in sources if s.id in self._source_ids]
        return sources

    def _build_runtime(self, source: SourceConfig) -> SourceRuntime:
        """
        Resolve the plugin and create the adapter instance for a source.

        Raises:
            ConfigurationError: If no plugin serves the source type or the
                source config is invalid
        """
        plugin = self._registry.get(source.type)
        if plugin is None:
            raise ConfigurationError(f'{source.id}: no plugin for type "{source.type}"')
        errors = validate_source(source, plugin)
        if errors:
            raise ConfigurationError(f"{source.id}: invalid configuration", errors=errors)
        return SourceRuntime(
            source=source,
            plugin=plugin,
            adapter=plugin.adapter_class(),
            lock=self.lock_for(source.id),
        )

    async def _start_source(self, source: SourceConfig, initial_delay: float = 0.0) -> None:
        try:
            runtime = self._build_runtime(source)
        except ConfigurationError as e:
            logger.error(
                "Source not started",
                source_id=source.id,
                error=str(e),
                details=e.errors,
            )
            return

        self._runtimes[source.id] = runtime
        mode = ConnectionManager.resolve_mode(source, runtime.plugin)
        if runtime.plugin.supports_realtime:
            await self._connections.start_connection(source, runtime.plugin, runtime.adapter)

        runtime.task = asyncio.create_task(
            self._run_source(runtime, initial_delay), name=f"source-{source.id}"
        )
        logger.info(
            "Source started",
            source_id=source.id,
            adapter_type=source.type,
            mode=mode,
            poll_interval=source.poll_interval,
        )

    async def _stop_source(self, source_id: str) -> None:
        runtime = self._runtimes.pop(source_id, None)
        if runtime is None:
            return
        if runtime.task is not None:
            runtime.task.cancel()
            await asyncio.gather(runtime.task, return_exceptions=True)
        await self._connections.stop_connection(source_id)
        logger.info("Source stopped", source_id=source_id)

    async def _run_source(self, runtime: SourceRuntime, initial_delay: float) -> None:
        """Poll one source on its interval until cancelled."""
        try:
            if initial_delay:
                await asyncio.sleep(initial_delay)
            while self._running:
                async with runtime.lock:
                    await self._poll_cycle(runtime)
                await asyncio.sleep(self._next_delay(runtime))
        except StoreUnavailableError as e:
            self._halt(e)

    def _next_delay(self, runtime: SourceRuntime) -> float:
        return max(float(runtime.source.poll_interval), runtime.backoff_seconds)

    async def _config_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._config_interval)
            try:
                await self.reconcile()
            except ConfigurationError as e:
                logger.warning("Config check failed", error=str(e))

    async def reconcile(self) -> None:
        """Start new sources, stop removed or disabled ones, restart changed ones."""
        fresh = {source.id: source for source in self._selected_sources()}

        for source_id in list(self._runtimes):
            if source_id not in fresh:
                logger.info("Source removed or disabled", source_id=source_id)
                await self._stop_source(source_id)

        for source_id, source in fresh.items():
            runtime = self._runtimes.get(source_id)
            if runtime is None:
                logger.info("New source detected", source_id=source_id)
                await self._start_source(source)
            elif runtime.source != source:
                logger.info("Source config changed, restarting", source_id=source_id)
                await self._stop_source(source_id)
                await self._start_source(source)

    # ── Poll cycle ──────────────────────────────────────────────

    async def _call_poll(
        self,
        runtime: SourceRuntime,
        state: dict[str, Any],
    ) -> Result[PollResult]:
        """Run ``adapter.poll`` and turn every failure except store loss into Err."""
        source = runtime.source
        try:
            result = await asyncio.wait_for(
                runtime.adapter.poll(source, copy.deepcopy(state), self._get_secret),
                timeout=self._poll_timeout,
            )
        except StoreUnavailableError:
            raise
        except asyncio.TimeoutError:
            return Err(TransientSourceError(f"poll timed out after {self._poll_timeout}s"))
        except Exception as e:
            return Err(e)
        return Ok(result)

    async def _poll_cycle(self, runtime: SourceRuntime) -> CycleReport:
        source = runtime.source
        report = CycleReport(source_id=source.id)
        start_time = time.monotonic()

        with traced(tracer, "poll_cycle", {"source_id": source.id, "adapter_type": source.type}):
            state = await self._repo.get_state(source.id)
            outcome = await self._call_poll(runtime, state)

            if isinstance(outcome, Ok):
                try:
                    await self._accept_items(runtime, outcome.value.items, report)
                    if source.track_replies:
                        report.replies = await self._process_replies(runtime)
                    await self._repo.set_state(
                        source.id, self._state_to_persist(source.id, outcome.value.state)
                    )
                except StoreUnavailableError:
                    raise
                except Exception as e:
                    outcome = Err(e)

            if isinstance(outcome, Err):
                report.error = outcome.message
                self._record_failure(runtime, outcome.error)
            else:
                runtime.consecutive_errors = 0
                runtime.backoff_seconds = 0.0
                self._metrics.set_backoff(source.id, 0)

        elapsed = time.monotonic() - start_time
        report.duration_ms = int(elapsed * 1000)
        await self._repo.log_poll(
            source.id, report.found, report.new, report.error, report.duration_ms
        )

        runtime.last_report = report
        self._metrics.record_poll(
            source.id, source.type, "error" if report.error else "success", elapsed
        )
        self._metrics.record_items(
            source.id,
            found=report.found,
            filtered=report.filtered,
            duplicate=report.duplicates,
            accepted=report.new,
        )
        if report.found or report.new or report.error:
            logger.info(
                "Poll cycle completed",
                source_id=source.id,
                found=report.found,
                new=report.new,
                filtered=report.filtered,
                duplicates=report.duplicates,
                replies=report.replies,
                error=report.error,
                elapsed_ms=report.duration_ms,
            )
        return report

    def _record_failure(self, runtime: SourceRuntime, error: BaseException) -> None:
        source = runtime.source
        runtime.consecutive_errors += 1
        runtime.backoff_seconds = min(
            float(self._max_backoff), 2.0 ** runtime.consecutive_errors
        )
        self._metrics.record_error(source.type, type(error).__name__)
        self._metrics.set_backoff(source.id, runtime.backoff_seconds)
        logger.error(
            "Poll cycle failed",
            source_id=source.id,
            error=str(error) or type(error).__name__,
            error_type=type(error).__name__,
            backoff_seconds=runtime.backoff_seconds,
        )

    def _state_to_persist(self, source_id: str, state: dict[str, Any]) -> dict[str, Any]:
        """Adapter state plus the live connection status, if any."""
        new_state = dict(state)
        snapshot = self._connections.snapshot(source_id)
        if snapshot is not None:
            new_state[CONNECTION_STATE_KEY] = snapshot
        return new_state

    async def _auth_headers(self, source: SourceConfig) -> dict[str, str]:
        if not source.secret_name:
            return {}
        try:
            return {"Authorization": f"Bearer {await self._get_secret(source.secret_name)}"}
        except SecretNotFoundError:
            return {}

    async def _download(
        self,
        source: SourceConfig,
        attachments: list[Attachment],
    ) -> list[Attachment]:
        if not attachments:
            return []
        if not source.download_attachments or all(a.local_path for a in attachments):
            return list(attachments)
        return await self._downloader.download(
            source.id, attachments, await self._auth_headers(source)
        )

    def thread_key_for(self, runtime: SourceRuntime, item: IngestItem) -> str | None:
        """
        Key used to poll replies for an item, if it can start a thread.

        Adapters set ``item.thread_key`` explicitly; otherwise adapters that
        implement ``poll_replies`` get the item id minus the ``<type>-`` prefix.
        """
        if item.thread_key:
            return item.thread_key
        if type(runtime.adapter).poll_replies is BaseAdapter.poll_replies:
            return None
        prefix = f"{runtime.source.type}-"
        if item.id.startswith(prefix):
            return item.id[len(prefix):]
        return None

    async def _accept_items(
        self,
        runtime: SourceRuntime,
        items: list[IngestItem],
        report: CycleReport,
    ) -> None:
        """Filter, dedup and hand each new item to the task sink."""
        source = runtime.source
        conditions = resolve_filter(source.filter, runtime.plugin.metadata.default_filter)
        report.found += len(items)

        for item in items:
            if not apply_filter(item, conditions):
                report.filtered += 1
                continue
            if await self._repo.is_duplicate(source.id, item.id):
                report.duplicates += 1
                continue

            if self._dry_run:
                report.new += 1
                logger.info("[dry-run] would create", source_id=source.id, title=item.title[:80])
                continue

            attachments = await self._download(source, item.attachments)
            task_id = await self._tasks.create(source, item, attachments)
            if task_id is None:
                logger.warning("Work item not created", source_id=source.id, item_id=item.id)

            if not await self._repo.record_item(source.id, item, task_id):
                # Accepted concurrently by another path
                report.duplicates += 1
                continue
            report.new += 1

            if task_id and source.track_replies:
                thread_key = self.thread_key_for(runtime, item)
                if thread_key:
                    await self._repo.register_thread(source.id, item.id, thread_key, task_id)

    async def _expire_idle_threads(
        self,
        source: SourceConfig,
        threads: list[TrackedThread],
    ) -> list[TrackedThread]:
        """Deactivate threads idle longer than ``thread_max_idle_hours``; return the rest."""
        if not source.thread_max_idle_hours:
            return threads

        cutoff = datetime.now(timezone.utc) - timedelta(hours=source.thread_max_idle_hours)
        live = []
        for thread in threads:
            if thread.updated_at is not None and thread.updated_at < cutoff:
                await self._repo.deactivate_thread(source.id, thread.parent_item_id)
                logger.info(
                    "Thread deactivated after inactivity",
                    source_id=source.id,
                    parent_item_id=thread.parent_item_id,
                    reply_count=thread.reply_count,
                )
                continue
            live.append(thread)
        return live

    async def _process_replies(self, runtime: SourceRuntime) -> int:
        """Append new replies of tracked threads. Failures are logged, not raised."""
        source = runtime.source
        threads = await self._repo.active_threads(source.id, limit=source.max_tracked_threads)
        threads = await self._expire_idle_threads(source, threads)
        if not threads:
            return 0

        try:
            results = await asyncio.wait_for(
                runtime.adapter.poll_replies(source, threads, self._get_secret),
                timeout=self._poll_timeout,
            )
        except StoreUnavailableError:
            raise
        except Exception as e:
            logger.warning("Thread reply polling failed", source_id=source.id, error=str(e))
            return 0

        appended = 0
        for thread_replies in results:
            replies = thread_replies.replies
            if not replies:
                continue
            thread = thread_replies.thread
            try:
                replies = [
                    reply.model_copy(
                        update={"attachments": await self._download(source, reply.attachments)}
                    )
                    for reply in replies
                ]
                if not await self._tasks.append_replies(source, thread.task_id, replies):
                    continue
                await self._repo.update_thread_cursor(
                    source.id, thread.parent_item_id, replies[-1].ts, len(replies)
                )
                appended += len(replies)
            except StoreUnavailableError:
                raise
            except Exception as e:
                logger.warning(
                    "Reply processing failed",
                    source_id=source.id,
                    parent_item_id=thread.parent_item_id,
                    error=str(e),
                )
        return appended

    # ── Realtime ────────────────────────────────────────────────

    async def handle_realtime_items(
        self,
        source: SourceConfig,
        items: list[IngestItem],
    ) -> CycleReport:
        """Run pushed items through the same acceptance path as a poll."""
        runtime = self._runtimes.get(source.id)
        if runtime is None:
            raise ConfigurationError(f"{source.id}: source is not running")

        report = CycleReport(source_id=source.id)
        try:
            async with runtime.lock:
                await self._accept_items(runtime, items, report)
        except StoreUnavailableError as e:
            self._halt(e)
            raise

        self._metrics.record_items(
            source.id,
            found=report.found,
            filtered=report.filtered,
            duplicate=report.duplicates,
            accepted=report.new,
        )
        if report.new:
            logger.info("Realtime items accepted", source_id=source.id, new=report.new)
        return report

    # ── One-off operations ──────────────────────────────────────

    def _require_source(self, source_id: str) -> SourceConfig:
        source = self._config.get_source(source_id)
        if source is None:
            raise ConfigurationError(f"Unknown source: {source_id}")
        return source

    async def poll_source(self, source_id: str) -> CycleReport:
        """
        Run a single poll cycle now, outside the schedule.

        Waits for any cycle of the same source already in progress.

        Raises:
            ConfigurationError: If the source is unknown or misconfigured
            StoreUnavailableError: If the durable store is unreachable
        """
        runtime = self._runtimes.get(source_id)
        if runtime is None:
            runtime = self._build_runtime(self._require_source(source_id))
        async with runtime.lock:
            return await self._poll_cycle(runtime)

    async def run_once(self) -> dict[str, CycleReport]:
        """
        Poll every selected source once, sequentially.

        Useful for cron-style runs and manual triggers.
        """
        reports = {}
        for source in self._selected_sources():
            try:
                reports[source.id] = await self.poll_source(source.id)
            except ConfigurationError as e:
                logger.error("Source skipped", source_id=source.id, error=str(e))
                reports[source.id] = CycleReport(source_id=source.id, error=str(e))
        return reports

    async def test_source(self, source_id: str) -> TestResult:
        """Check credentials and connectivity without touching stored state."""
        source = self._require_source(source_id)
        plugin = self._registry.get(source.type)
        if plugin is None:
            return TestResult(ok=False, message=f'No plugin for type "{source.type}"')

        errors = validate_source(source, plugin)
        if errors:
            return TestResult(ok=False, message="; ".join(errors))

        runtime = self._runtimes.get(source_id)
        adapter = runtime.adapter if runtime else plugin.adapter_class()
        try:
            return await asyncio.wait_for(
                adapter.test(source, self._get_secret), timeout=self._poll_timeout
            )
        except asyncio.TimeoutError:
            return TestResult(ok=False, message=f"test timed out after {self._poll_timeout}s")
        except Exception as e:
            return TestResult(ok=False, message=f"{type(e).__name__}: {e}")

    async def send_message(
        self,
        source_id: str,
        target: str,
        message: str,
        thread_id: str | None = None,
    ) -> SendResult:
        """Post a message back to the platform behind a source."""
        source = self._require_source(source_id)
        runtime = self._runtimes.get(source_id) or self._build_runtime(source)
        if not runtime.plugin.supports_send:
            return SendResult(ok=False, error=f'Adapter "{source.type}" does not support send')
        try:
            return await runtime.adapter.send(
                source, target, message, self._get_secret, thread_id=thread_id
            )
        except TransientSourceError as e:
            return SendResult(ok=False, error=str(e))

    def status(self) -> dict[str, Any]:
        sources = {}
        for source_id, runtime in self._runtimes.items():
            report = runtime.last_report
            sources[source_id] = {
                "type": runtime.source.type,
                "mode": ConnectionManager.resolve_mode(runtime.source, runtime.plugin),
                "poll_interval": runtime.source.poll_interval,
                "consecutive_errors": runtime.consecutive_errors,
                "backoff_seconds": runtime.backoff_seconds,
                "last_cycle": report.to_dict() if report else None,
            }
        return {
            "running": self._running,
            "dry_run": self._dry_run,
            "sources": sources,
            "connections": self._connections.get_status(),
        }
