"""Tracking loop controller.

One ``TrackingLoop`` per subject drives its position source while tracking
conditions hold: the subject is an authenticated provider (or a group
member in group mode) and is not offline.

A running loop has two producers (the fixed-interval poll task and the
continuous watch callback) and one consumer: the writer task, which drains a
single ``asyncio.Queue`` and is the only path to the sink.  Every start bumps
``generation``; fixes and tasks from an older generation are discarded, so a
halt takes effect before the call that caused it returns.

Loop states::

    IDLE -> STARTING -> RUNNING -> STOPPING -> IDLE
             |                        ^
             +-- permission denied ---+  (blocked until resumed)
"""

from __future__ import annotations

import asyncio
import enum
from typing import Callable

import structlog

from modules.tracking.domain import Position, Presence
from modules.tracking.errors import (
    PermissionDenied,
    PositionUnavailable,
    TrackingError,
    WriteError,
)
from modules.tracking.geofence import GroupGeofenceWatch
from modules.tracking.presence import PresenceStore
from modules.tracking.sink import PROVIDER_ROLE, LocationSink, WriteThrottle
from modules.tracking.source import PositionSource, WatcherHandle
from shared.config import Settings, get_settings

logger = structlog.get_logger()


class LoopState(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class TrackingLoop:
    def __init__(
        self,
        subject_id: str,
        source: PositionSource,
        sink: LocationSink,
        presence: PresenceStore,
        *,
        group_id: str | None = None,
        settings: Settings | None = None,
        throttle: WriteThrottle | None = None,
        on_permission_denied: Callable[[str], None] | None = None,
        geofences: GroupGeofenceWatch | None = None,
    ):
        self.subject_id = str(subject_id)
        self.source = source
        self.sink = sink
        self.presence = presence
        self.group_id = group_id
        self.settings = settings or get_settings()
        self.throttle = throttle or WriteThrottle(self.settings.sink_min_write_interval_seconds)
        self.on_permission_denied = on_permission_denied
        self.geofences = geofences

        self.state = LoopState.IDLE
        self.generation = 0
        self.permission_blocked = False
        self.writes = 0

        self._role: str | None = None
        self._queue: asyncio.Queue[Position] | None = None
        self._watch: WatcherHandle | None = None
        self._poll_task: asyncio.Task | None = None
        self._writer_task: asyncio.Task | None = None
        self._supervisor_task: asyncio.Task | None = None
        self._prompted = False
        self._retired: set[asyncio.Task] = set()

    @property
    def throttle_key(self) -> tuple[str, str | None]:
        return (self.subject_id, self.group_id)

    async def should_run(self) -> bool:
        """Tracking conditions: not offline, and a provider unless in group mode."""
        current = await self.presence.get_state(self.subject_id)
        if current is not None and current.state is Presence.OFFLINE:
            return False
        if self.group_id is not None:
            return True
        return await self.presence.is_provider(self.subject_id)

    async def ensure_running(self) -> bool:
        """Start the loop if conditions hold; halt it if they no longer do."""
        if self.state is LoopState.RUNNING:
            if not await self.should_run():
                self.halt("conditions_lost")
                return False
            return True
        if self.state is not LoopState.IDLE or self.permission_blocked:
            return False
        if not await self.should_run():
            return False
        return await self._start()

    async def _start(self) -> bool:
        self.state = LoopState.STARTING
        self.generation += 1
        generation = self.generation
        logger.info(
            "tracking_loop_starting",
            subject_id=self.subject_id,
            group_id=self.group_id,
            generation=generation,
        )

        queue: asyncio.Queue[Position] = asyncio.Queue()
        handle: WatcherHandle | None = None
        try:
            self._role = PROVIDER_ROLE if await self.presence.is_provider(self.subject_id) else None
            queue.put_nowait(await self.source.get_current_position())
            if generation != self.generation:
                return False
            handle = await self.source.watch_position(
                lambda position: self._on_watch_fix(generation, queue, position),
                on_error=lambda err: self._on_watch_error(generation, err),
            )
        except PermissionDenied:
            self._reset_if_current(generation)
            self._block_for_permission()
            return False
        except PositionUnavailable as e:
            logger.warning(
                "tracking_loop_start_failed",
                subject_id=self.subject_id,
                kind=e.kind,
                error=str(e),
            )
            self._reset_if_current(generation)
            return False
        except Exception:
            logger.exception("tracking_loop_start_error", subject_id=self.subject_id)
            self._reset_if_current(generation)
            return False

        if generation != self.generation:
            # Halted while the watch was being set up.
            self.source.clear_watch(handle)
            return False

        self._queue = queue
        self._watch = handle
        self._writer_task = asyncio.create_task(self._writer(generation, queue))
        self._poll_task = asyncio.create_task(self._poll(generation, queue))
        self.state = LoopState.RUNNING
        logger.info("tracking_loop_running", subject_id=self.subject_id, generation=generation)
        return True

    def _reset_if_current(self, generation: int) -> None:
        if generation == self.generation and self.state is LoopState.STARTING:
            self.state = LoopState.IDLE

    def _on_watch_fix(self, generation: int, queue: asyncio.Queue, position: Position) -> None:
        if generation != self.generation:
            return
        queue.put_nowait(position)

    def _on_watch_error(self, generation: int, err: TrackingError) -> None:
        if generation != self.generation:
            return
        if isinstance(err, PermissionDenied):
            self.halt("permission_denied")
            self._block_for_permission()

    async def _poll(self, generation: int, queue: asyncio.Queue) -> None:
        interval = self.settings.tracking_poll_interval_seconds
        while generation == self.generation:
            await asyncio.sleep(interval)
            try:
                position = await self.source.get_current_position()
            except PermissionDenied:
                if generation == self.generation:
                    self.halt("permission_denied")
                    self._block_for_permission()
                return
            except PositionUnavailable as e:
                logger.debug("tracking_poll_miss", subject_id=self.subject_id, kind=e.kind)
                continue
            except Exception:
                logger.exception("tracking_poll_error", subject_id=self.subject_id)
                continue
            if generation != self.generation:
                return
            queue.put_nowait(position)

    async def _writer(self, generation: int, queue: asyncio.Queue) -> None:
        while True:
            position = await queue.get()
            if generation != self.generation:
                return
            if not self.throttle.allow(self.throttle_key):
                continue
            try:
                if await self.sink.write_location(
                    self.subject_id, position, group_id=self.group_id, role=self._role
                ):
                    self.writes += 1
                    if self.geofences is not None:
                        await self.geofences.observe(self.subject_id, position, self.group_id)
            except WriteError as e:
                logger.warning("tracking_write_failed", subject_id=self.subject_id, error=str(e))
            except ValueError as e:
                logger.warning("tracking_position_invalid", subject_id=self.subject_id, error=str(e))
            except Exception:
                logger.exception("tracking_writer_error", subject_id=self.subject_id)

    def halt(self, reason: str) -> bool:
        """Stop polling and watching now. Safe to call from any state."""
        if self.state is LoopState.IDLE:
            return False
        self.state = LoopState.STOPPING
        self.generation += 1

        current = asyncio.current_task()
        for task in (self._poll_task, self._writer_task):
            if task is not None and not task.done() and task is not current:
                task.cancel()
                self._retired.add(task)
                task.add_done_callback(self._retired.discard)
        self._poll_task = None
        self._writer_task = None

        if self._watch is not None:
            self.source.clear_watch(self._watch)
            self._watch = None
        self._queue = None
        self.state = LoopState.IDLE
        logger.info(
            "tracking_loop_halted",
            subject_id=self.subject_id,
            reason=reason,
            generation=self.generation,
        )
        return True

    def _block_for_permission(self) -> None:
        self.permission_blocked = True
        if self._prompted:
            return
        self._prompted = True
        logger.warning("tracking_permission_denied", subject_id=self.subject_id)
        if self.on_permission_denied is not None:
            try:
                self.on_permission_denied(self.subject_id)
            except Exception:
                logger.exception("permission_prompt_failed", subject_id=self.subject_id)

    async def resume_after_permission_prompt(self) -> bool:
        """Clear the permission block (the user went to settings) and retry."""
        self.permission_blocked = False
        self._prompted = False
        self.source.reset_permission()
        return await self.ensure_running()

    async def _supervise(self) -> None:
        interval = self.settings.tracking_supervisor_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                if self.state is LoopState.RUNNING and self._tasks_dead():
                    logger.warning("tracking_loop_died", subject_id=self.subject_id)
                    self.halt("tasks_died")
                await self.ensure_running()
            except Exception:
                logger.exception("tracking_supervisor_error", subject_id=self.subject_id)

    def _tasks_dead(self) -> bool:
        return any(task is None or task.done() for task in (self._poll_task, self._writer_task))

    async def enable(self) -> bool:
        """Start if possible and keep a supervisor re-checking conditions."""
        started = await self.ensure_running()
        if self._supervisor_task is None or self._supervisor_task.done():
            self._supervisor_task = asyncio.create_task(self._supervise())
        return started

    async def aclose(self) -> None:
        """Halt, stop supervising and wait for cancelled tasks to finish."""
        self.halt("closed")
        if self._supervisor_task is not None:
            self._supervisor_task.cancel()
            self._retired.add(self._supervisor_task)
            self._supervisor_task = None
        if self._retired:
            await asyncio.gather(*self._retired, return_exceptions=True)
            self._retired.clear()


SourceFactory = Callable[[str], PositionSource]


class TrackingManager:
    """Registry of tracking loops, driven by presence changes."""

    def __init__(
        self,
        presence: PresenceStore,
        sink: LocationSink,
        source_factory: SourceFactory,
        settings: Settings | None = None,
        on_permission_denied: Callable[[str], None] | None = None,
        geofences: GroupGeofenceWatch | None = None,
    ):
        self.presence = presence
        self.sink = sink
        self.source_factory = source_factory
        self.settings = settings or get_settings()
        self.on_permission_denied = on_permission_denied
        self.geofences = geofences
        self._loops: dict[str, TrackingLoop] = {}
        self._pending: set[asyncio.Task] = set()
        self._unsubscribe = presence.subscribe(self._on_presence_change)

    def get(self, subject_id: str) -> TrackingLoop | None:
        return self._loops.get(str(subject_id))

    @property
    def loops(self) -> dict[str, TrackingLoop]:
        return dict(self._loops)

    async def start_tracking(self, subject_id: str, group_id: str | None = None) -> TrackingLoop:
        key = str(subject_id)
        loop = self._loops.get(key)
        if loop is not None and loop.group_id != group_id:
            await loop.aclose()
            loop = None
        if loop is None:
            loop = TrackingLoop(
                key,
                self.source_factory(key),
                self.sink,
                self.presence,
                group_id=group_id,
                settings=self.settings,
                on_permission_denied=self.on_permission_denied,
                geofences=self.geofences,
            )
            self._loops[key] = loop
        await loop.enable()
        return loop

    async def stop_tracking(self, subject_id: str) -> bool:
        loop = self._loops.pop(str(subject_id), None)
        if loop is None:
            return False
        await loop.aclose()
        if self.geofences is not None:
            self.geofences.forget(subject_id)
        return True

    def _on_presence_change(self, state) -> None:
        loop = self._loops.get(state.subject_id)
        if loop is None:
            return
        if state.state is Presence.OFFLINE:
            loop.halt("offline")
            return
        task = asyncio.create_task(loop.ensure_running())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def shutdown(self) -> None:
        self._unsubscribe()
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        for loop in list(self._loops.values()):
            await loop.aclose()
        self._loops.clear()
