"""Location fan-out: live snapshot streams for map views.

A snapshot is the set of visible subjects in a scope (all active providers,
or the members and trackers of one group), each position joined with its
current presence.  Offline subjects never appear.

Each scope has one ``ScopeFeed`` shared by all of its subscribers.  A feed
refreshes on location change events, on presence changes and on a periodic
poll.  Requests that arrive while a refresh is running collapse into a single
trailing refresh, and consecutive refreshes are spaced by a minimum interval.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable

import structlog
from sqlalchemy import and_, select

from modules.tracking.domain import LocationSnapshot, Presence, PresenceState, as_uuid
from modules.tracking.presence import PresenceStore
from shared.config import Settings, get_settings
from shared.models.location import ProviderLocation, SubjectLocation
from shared.models.tracker import Tracker
from shared.models.tracking_group import TrackingGroupMember
from shared.redis import decode_change

logger = structlog.get_logger()


@dataclass(frozen=True)
class Scope:
    kind: str  # "providers" | "group"
    group_id: str | None = None

    @classmethod
    def providers(cls) -> "Scope":
        return cls("providers")

    @classmethod
    def group(cls, group_id: str) -> "Scope":
        return cls("group", str(as_uuid(group_id)))

    def __str__(self) -> str:
        return self.kind if self.group_id is None else f"{self.kind}:{self.group_id}"


def _visible(state: PresenceState | None) -> bool:
    return state is None or state.state is not Presence.OFFLINE


class SnapshotLoader:
    """Reads positions for a scope and joins them with presence."""

    def __init__(self, session_factory, presence: PresenceStore):
        self.session_factory = session_factory
        self.presence = presence

    async def load(self, scope: Scope, reconcile: bool = False) -> list[LocationSnapshot]:
        if scope.kind == "providers":
            return await self._load_providers(reconcile)
        return await self._load_group(scope.group_id, reconcile)

    async def _load_providers(self, reconcile: bool) -> list[LocationSnapshot]:
        async with self.session_factory() as session:
            result = await session.execute(select(ProviderLocation))
            rows = result.scalars().all()

        states = await self.presence.get_states([str(r.subject_id) for r in rows], refresh=reconcile)
        snapshot = []
        for row in rows:
            sid = str(row.subject_id)
            state = states.get(sid)
            # Providers are only shown while explicitly available or busy.
            if state is None or state.state is Presence.OFFLINE:
                continue
            if not await self.presence.is_provider(sid):
                continue
            snapshot.append(
                LocationSnapshot(
                    subject_id=sid,
                    latitude=row.latitude,
                    longitude=row.longitude,
                    updated_at=row.updated_at,
                    state=state.state,
                )
            )
        return snapshot

    async def _load_group(self, group_id: str, reconcile: bool) -> list[LocationSnapshot]:
        gid = as_uuid(group_id)
        async with self.session_factory() as session:
            result = await session.execute(
                select(SubjectLocation, TrackingGroupMember, Tracker)
                .outerjoin(
                    TrackingGroupMember,
                    and_(
                        TrackingGroupMember.group_id == SubjectLocation.group_id,
                        TrackingGroupMember.subject_id == SubjectLocation.subject_id,
                    ),
                )
                .outerjoin(Tracker, Tracker.id == SubjectLocation.subject_id)
                .where(SubjectLocation.group_id == gid)
                .order_by(SubjectLocation.subject_id)
            )
            rows = result.all()

        states = await self.presence.get_states(
            [str(loc.subject_id) for loc, _, _ in rows], refresh=reconcile
        )
        snapshot = []
        for loc, member, tracker in rows:
            sid = str(loc.subject_id)
            state = states.get(sid)
            if not _visible(state):
                continue
            if member is not None:
                nickname = member.nickname
            elif tracker is not None:
                nickname = tracker.name
            else:
                nickname = None
            snapshot.append(
                LocationSnapshot(
                    subject_id=sid,
                    latitude=loc.latitude,
                    longitude=loc.longitude,
                    updated_at=loc.updated_at,
                    group_id=str(loc.group_id),
                    state=state.state if state else None,
                    nickname=nickname,
                    is_owner=bool(member.is_owner) if member is not None else False,
                )
            )
        return snapshot


class Subscription:
    """Async iterator over a scope's snapshots. Only the latest one is kept."""

    def __init__(self, feed: "ScopeFeed"):
        self._feed = feed
        self._latest: list[LocationSnapshot] | None = None
        self._ready = asyncio.Event()
        self._closed = False

    @property
    def scope(self) -> Scope:
        return self._feed.scope

    @property
    def latest(self) -> list[LocationSnapshot] | None:
        return self._latest

    def push(self, snapshot: list[LocationSnapshot]) -> None:
        self._latest = snapshot
        self._ready.set()

    def __aiter__(self):
        return self

    async def __anext__(self) -> list[LocationSnapshot]:
        if self._closed:
            raise StopAsyncIteration
        await self._ready.wait()
        if self._closed:
            raise StopAsyncIteration
        self._ready.clear()
        return self._latest

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._ready.set()
        await self._feed.detach(self)


class ScopeFeed:
    def __init__(
        self,
        scope: Scope,
        loader: SnapshotLoader,
        settings: Settings | None = None,
        clock=time.monotonic,
        on_idle: Callable[["ScopeFeed"], None] | None = None,
    ):
        self.scope = scope
        self.loader = loader
        self.settings = settings or get_settings()
        self._clock = clock
        self.on_idle = on_idle
        self.subscribers: set[Subscription] = set()
        self.snapshot: list[LocationSnapshot] | None = None
        self.refreshes = 0
        self._refresh_task: asyncio.Task | None = None
        self._poll_task: asyncio.Task | None = None
        self._dirty = False
        self._reconcile = False
        self._last_refresh_at: float | None = None

    @property
    def refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    def request_refresh(self, reconcile: bool = False) -> None:
        """Ask for a refresh. Folded into the running one if there is one."""
        self._reconcile = self._reconcile or reconcile
        if self.refreshing:
            self._dirty = True
            return
        self._refresh_task = asyncio.create_task(self._run_refresh())

    async def _run_refresh(self) -> None:
        spacing = self.settings.fanout_min_refresh_spacing_seconds
        while True:
            self._dirty = False
            reconcile, self._reconcile = self._reconcile, False
            if self._last_refresh_at is not None:
                wait = spacing - (self._clock() - self._last_refresh_at)
                if wait > 0:
                    await asyncio.sleep(wait)
            try:
                snapshot = await self.loader.load(self.scope, reconcile=reconcile)
            except Exception:
                logger.exception("fanout_refresh_failed", scope=str(self.scope))
            else:
                self.snapshot = snapshot
                for sub in list(self.subscribers):
                    sub.push(snapshot)
            self._last_refresh_at = self._clock()
            self.refreshes += 1
            if not self._dirty:
                return

    async def _poll(self) -> None:
        interval = self.settings.fanout_poll_interval_seconds
        while True:
            await asyncio.sleep(interval)
            self.request_refresh(reconcile=True)

    def attach(self, sub: Subscription) -> None:
        self.subscribers.add(sub)
        if self.snapshot is not None:
            sub.push(self.snapshot)
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll())
        self.request_refresh()

    async def detach(self, sub: Subscription) -> None:
        self.subscribers.discard(sub)
        if self.subscribers:
            return
        await self.close()
        # A subscriber may have attached while the tasks were being cancelled.
        if not self.subscribers and self.on_idle is not None:
            self.on_idle(self)

    async def close(self) -> None:
        tasks = [t for t in (self._poll_task, self._refresh_task) if t is not None and not t.done()]
        # Cleared before awaiting so an attach during the cancel starts fresh tasks.
        self._poll_task = None
        self._refresh_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class LocationFanout:
    """Owns one feed per active scope and routes change events to them."""

    def __init__(
        self,
        session_factory,
        presence: PresenceStore,
        redis_client=None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.redis_client = redis_client
        self.loader = SnapshotLoader(session_factory, presence)
        self._feeds: dict[Scope, ScopeFeed] = {}
        self._unsubscribe_presence = presence.subscribe(self._on_presence)

    def subscribe(self, scope: Scope) -> Subscription:
        feed = self._feeds.get(scope)
        if feed is None:
            feed = ScopeFeed(scope, self.loader, self.settings, on_idle=self._drop_feed)
            self._feeds[scope] = feed
        sub = Subscription(feed)
        feed.attach(sub)
        logger.info("fanout_subscribed", scope=str(scope), subscribers=len(feed.subscribers))
        return sub

    def _drop_feed(self, feed: ScopeFeed) -> None:
        if self._feeds.get(feed.scope) is feed:
            del self._feeds[feed.scope]
            logger.info("fanout_feed_dropped", scope=str(feed.scope))

    async def snapshot(self, scope: Scope) -> list[LocationSnapshot]:
        """One-shot read, bypassing feeds."""
        return await self.loader.load(scope)

    def feed(self, scope: Scope) -> ScopeFeed | None:
        return self._feeds.get(scope)

    def notify_location(self, payload: dict) -> None:
        """Route a location change event to the feeds it affects."""
        table = payload.get("table")
        if table == ProviderLocation.__tablename__:
            targets = [self._feeds.get(Scope.providers())]
        elif table == SubjectLocation.__tablename__ and payload.get("group_id"):
            targets = [self._feeds.get(Scope("group", str(payload["group_id"])))]
        else:
            return
        for feed in targets:
            if feed is not None and feed.subscribers:
                feed.request_refresh()

    def _on_presence(self, state: PresenceState) -> None:
        for feed in list(self._feeds.values()):
            if feed.subscribers:
                feed.request_refresh()

    async def listen(self) -> None:
        """Consume location change events until cancelled."""
        if self.redis_client is None:
            return
        channel = self.settings.channel("locations")
        while True:
            pubsub = self.redis_client.pubsub()
            try:
                await pubsub.subscribe(channel)
                logger.info("fanout_listener_subscribed", channel=channel)
                async for message in pubsub.listen():
                    payload = decode_change(message)
                    if payload is not None:
                        self.notify_location(payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("fanout_listener_error", error=str(e))
            finally:
                await pubsub.aclose()
            await asyncio.sleep(1.0)

    async def shutdown(self) -> None:
        self._unsubscribe_presence()
        for feed in list(self._feeds.values()):
            await feed.close()
        self._feeds.clear()
