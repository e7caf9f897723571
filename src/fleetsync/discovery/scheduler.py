"""Polling scheduler driving discovery and reconciliation per connector."""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Union

import structlog
from pydantic import BaseModel, Field

from fleetsync.config.settings import SchedulerSettings
from fleetsync.core.base_connector import BaseConnector
from fleetsync.core.exceptions import FleetSyncException, HealthCheckException, SchedulerException
from fleetsync.core.utils import parse_duration, utcnow
from fleetsync.models.asset import ImageInfo, Platform, SyncResult
from .reconciliation import ReconciliationEngine
from .registry import ConnectorRegistry, RegisteredConnector, RegistryKey

logger = structlog.get_logger(__name__)

ResultHandler = Callable[[SyncResult], Union[None, Awaitable[None]]]


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class TriggerType(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class RunRecord(BaseModel):
    """One discovery + reconciliation attempt."""

    tenant: str
    platform: Platform
    connector: str
    trigger: TriggerType
    status: RunState
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration: float = 0.0
    assets_found: int = 0
    assets_new: int = 0
    assets_updated: int = 0
    assets_removed: int = 0
    images: int = 0
    error: Optional[str] = None
    result: Optional[SyncResult] = None


class ConnectorStatus(BaseModel):
    tenant: str
    platform: Platform
    connector: str
    state: RunState = RunState.IDLE
    interval_seconds: float
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_status: Optional[RunState] = None
    last_error: Optional[str] = None
    last_result: Optional[SyncResult] = None
    history: List[RunRecord] = Field(default_factory=list)


@dataclass
class JobOutput:
    result: SyncResult
    images: List[ImageInfo] = field(default_factory=list)


@dataclass
class _Tracker:
    state: RunState = RunState.IDLE
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_status: Optional[RunState] = None
    last_error: Optional[str] = None
    last_result: Optional[SyncResult] = None
    history: Deque[RunRecord] = field(default_factory=deque)


class Scheduler:
    """Runs every registered connector on its own interval.

    At most ``max_concurrent`` jobs run at once. A job for a (tenant,
    platform) pair is never started while a previous one for the same pair
    is still in flight, including a job abandoned after its timeout.
    """

    def __init__(self,
                 registry: ConnectorRegistry,
                 engine: ReconciliationEngine,
                 settings: Optional[SchedulerSettings] = None):
        self.registry = registry
        self.engine = engine
        self.settings = settings or SchedulerSettings()
        self.default_interval = parse_duration(self.settings.default_interval)

        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent)
        self._cancel = asyncio.Event()
        self._trackers: Dict[RegistryKey, _Tracker] = {}
        self._queued: Set[RegistryKey] = set()
        self._in_flight: Dict[RegistryKey, asyncio.Task] = {}
        self._abandoned: Set[RegistryKey] = set()
        self._loops: Dict[RegistryKey, asyncio.Task] = {}
        self._handlers: List[ResultHandler] = []
        self._started = False
        self.logger = logger.bind(component="scheduler")

    # Public API

    def add_result_handler(self, handler: ResultHandler) -> None:
        """Called with every SyncResult of a completed run."""
        self._handlers.append(handler)

    @property
    def is_running(self) -> bool:
        return self._started and not self._cancel.is_set()

    async def start(self) -> None:
        if self._started:
            raise SchedulerException("Scheduler already started")
        self._started = True
        for entry in self.registry:
            self._loops[entry.key] = asyncio.create_task(
                self._poll_loop(entry), name=f"poll-{entry.tenant}-{entry.platform.value}"
            )
        self.logger.info(
            f"Scheduler started with {len(self._loops)} connectors",
            max_concurrent=self.settings.max_concurrent,
            run_on_start=self.settings.run_on_start
        )

    async def stop(self) -> None:
        """Cancel discovery, wait for the grace period, then close connectors."""
        if self._cancel.is_set():
            return
        self._cancel.set()
        self.logger.info("Scheduler stopping", in_flight=len(self._in_flight))

        tasks = [t for t in list(self._loops.values()) + list(self._in_flight.values()) if not t.done()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.settings.shutdown_grace_seconds)
            for task in pending:
                task.cancel()
            if pending:
                self.logger.warning("Cancelled jobs after grace period", count=len(pending))
                await asyncio.gather(*pending, return_exceptions=True)

        await self.registry.close_all()
        self.logger.info("Scheduler stopped")

    async def trigger_sync(self, tenant: str, platform: Union[str, Platform]) -> RunRecord:
        """Run one connector immediately."""
        entry = self.registry.get(tenant, platform)
        if entry is None:
            raise SchedulerException(
                f"No connector registered for tenant {tenant!r} on {Platform.parse(platform).value}"
            )
        if self._busy(entry.key):
            raise SchedulerException(
                f"Sync already running for tenant {tenant!r} on {entry.platform.value}",
                {"tenant": tenant, "platform": entry.platform.value}
            )
        return await self._execute(entry, TriggerType.MANUAL)

    async def run_once(self,
                       tenant: Optional[str] = None,
                       platform: Optional[Union[str, Platform]] = None) -> List[RunRecord]:
        """Run every matching connector once, bounded by the same semaphore."""
        entries = []
        for entry in self.registry.filter(tenant, platform):
            if self._busy(entry.key):
                self.logger.info("Skipping connector with a run in flight", tenant=entry.tenant,
                                 platform=entry.platform.value)
                continue
            entries.append(entry)
        return list(await asyncio.gather(*(self._execute(e, TriggerType.MANUAL) for e in entries)))

    def status(self, tenant: str, platform: Union[str, Platform]) -> Optional[ConnectorStatus]:
        entry = self.registry.get(tenant, platform)
        if entry is None:
            return None
        tracker = self._tracker(entry.key)
        return ConnectorStatus(
            tenant=entry.tenant,
            platform=entry.platform,
            connector=entry.name,
            state=tracker.state,
            interval_seconds=self._interval(entry),
            next_run_at=tracker.next_run_at,
            last_run_at=tracker.last_run_at,
            last_status=tracker.last_status,
            last_error=tracker.last_error,
            last_result=tracker.last_result,
            history=list(tracker.history),
        )

    def statuses(self) -> List[ConnectorStatus]:
        return [self.status(entry.tenant, entry.platform) for entry in self.registry]

    # Loop

    def _interval(self, entry: RegisteredConnector) -> float:
        if entry.interval:
            return parse_duration(entry.interval, self.default_interval)
        return self.default_interval

    def _tracker(self, key: RegistryKey) -> _Tracker:
        if key not in self._trackers:
            self._trackers[key] = _Tracker(history=deque(maxlen=self.settings.history_size))
        return self._trackers[key]

    def _busy(self, key: RegistryKey) -> bool:
        task = self._in_flight.get(key)
        return key in self._queued or (task is not None and not task.done())

    async def _poll_loop(self, entry: RegisteredConnector) -> None:
        interval = self._interval(entry)
        tracker = self._tracker(entry.key)
        delay = 0.0 if self.settings.run_on_start else interval
        log = self.logger.bind(tenant=entry.tenant, platform=entry.platform.value)

        while not self._cancel.is_set():
            tracker.next_run_at = utcnow() + timedelta(seconds=delay)
            if delay > 0:
                try:
                    await asyncio.wait_for(self._cancel.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass

            if self._busy(entry.key):
                log.warning("Previous run still in flight, skipping tick")
            else:
                await self._execute(entry, TriggerType.SCHEDULED)
            delay = interval

        tracker.next_run_at = None

    # Execution

    async def _execute(self, entry: RegisteredConnector, trigger: TriggerType) -> RunRecord:
        key = entry.key
        tracker = self._tracker(key)
        timeout = entry.timeout_seconds or self.settings.job_timeout_seconds
        log = self.logger.bind(tenant=entry.tenant, platform=entry.platform.value, trigger=trigger.value)

        self._queued.add(key)
        try:
            async with self._semaphore:
                self._queued.discard(key)
                started_at = utcnow()
                started = time.monotonic()
                tracker.state = RunState.RUNNING
                tracker.last_run_at = started_at

                task = asyncio.create_task(self._run_job(entry), name=f"job-{entry.tenant}-{entry.platform.value}")
                self._in_flight[key] = task
                task.add_done_callback(lambda t, key=key: self._job_done(key, t))

                output: Optional[JobOutput] = None
                error: Optional[str] = None
                try:
                    output = await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
                except asyncio.TimeoutError:
                    self._abandoned.add(key)
                    error = f"Run timed out after {timeout}s"
                    log.error("Run timed out; slot released, session left open", timeout_seconds=timeout)
                except FleetSyncException as e:
                    error = e.message
                    log.error("Run failed", error=e.message, details=e.details)
                except Exception as e:
                    error = str(e)
                    log.error("Run failed", error=str(e), error_type=type(e).__name__)
        finally:
            self._queued.discard(key)

        record = RunRecord(
            tenant=entry.tenant,
            platform=entry.platform,
            connector=entry.name,
            trigger=trigger,
            status=RunState.FAILED if error else RunState.SUCCESS,
            started_at=started_at,
            finished_at=utcnow(),
            duration=time.monotonic() - started,
            error=error,
        )
        if output is not None:
            result = output.result
            record.assets_found = result.assets_found
            record.assets_new = result.assets_new
            record.assets_updated = result.assets_updated
            record.assets_removed = result.assets_removed
            record.images = len(output.images)
            record.result = result
            tracker.last_result = result
        elif error is None:
            record.error = "Run cancelled; results discarded"
            record.status = RunState.FAILED

        # Back to idle; the outcome is kept in last_status and history.
        tracker.last_status = record.status
        tracker.last_error = record.error
        tracker.history.append(record)
        tracker.state = RunState.IDLE

        if output is not None:
            await self._emit(output.result)
        return record

    async def _run_job(self, entry: RegisteredConnector) -> Optional[JobOutput]:
        connector = entry.connector
        log = self.logger.bind(tenant=entry.tenant, platform=entry.platform.value, connector=entry.name)

        await self._ensure_session(connector)
        assets = await connector.discover_assets(entry.tenant, cancel=self._cancel)
        failures = list(connector.scope_failures)

        if self._cancel.is_set():
            log.info("Discovery cancelled; results discarded", assets=len(assets))
            return None
        if entry.key in self._abandoned:
            log.warning("Run finished after its timeout; results discarded", assets=len(assets))
            return None

        result = await self.engine.sync(
            entry.tenant,
            entry.platform,
            assets,
            failed_scopes=failures,
            scope_of=connector.asset_scope,
        )

        images: List[ImageInfo] = []
        if entry.discover_images:
            try:
                images = await connector.discover_images(cancel=self._cancel)
            except FleetSyncException as e:
                result.errors.append(f"image discovery: {e.message}")
                log.warning("Image discovery failed", error=e.message)
        return JobOutput(result=result, images=images)

    async def _ensure_session(self, connector: BaseConnector) -> None:
        if not connector.is_connected:
            await connector.connect()
            return
        try:
            await connector.health_check()
        except HealthCheckException as e:
            connector.logger.warning("Session unhealthy, reconnecting", error=e.message)
            await connector.reconnect()

    def _job_done(self, key: RegistryKey, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if key not in self._abandoned:
            return
        self._abandoned.discard(key)
        if task.cancelled():
            self.logger.info("Abandoned run cancelled", tenant=key[0], platform=key[1].value)
        elif task.exception() is not None:
            self.logger.warning("Abandoned run failed", tenant=key[0], platform=key[1].value,
                                error=str(task.exception()))
        else:
            self.logger.info("Abandoned run finished", tenant=key[0], platform=key[1].value)

    async def _emit(self, result: SyncResult) -> None:
        for handler in self._handlers:
            try:
                outcome: Any = handler(result)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as e:
                self.logger.warning("Result handler failed", handler=getattr(handler, "__name__", repr(handler)),
                                    error=str(e))
