"""Presence store: the single owner of each subject's availability state.

The ``profiles`` row is authoritative; this store keeps a process-local cache
for synchronous reads and notifies in-process listeners.  A change becomes
visible two ways: the local broadcast right after a successful write, and the
echo that other processes (and this one) receive over Redis.  Echoes are
applied in arrival order.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Callable

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from modules.tracking.domain import Presence, PresenceState, as_utc, as_uuid, utcnow
from modules.tracking.errors import Unauthorized, WriteError
from shared.auth import SYSTEM_ACTOR
from shared.config import Settings, get_settings
from shared.models.profile import Profile
from shared.redis import decode_change, publish_change

logger = structlog.get_logger()

Listener = Callable[[PresenceState], None]

PROVIDER_ROLE = "provider"


class PresenceStore:
    def __init__(self, session_factory, redis_client=None, settings: Settings | None = None):
        self.session_factory = session_factory
        self.redis_client = redis_client
        self.settings = settings or get_settings()
        self.instance_id = uuid.uuid4().hex
        self._cache: dict[str, PresenceState] = {}
        self._roles: dict[str, str] = {}
        self._listeners: list[Listener] = []

    # -- reads ---------------------------------------------------------

    def peek(self, subject_id: str) -> PresenceState | None:
        """Cached state, without touching the database."""
        return self._cache.get(str(subject_id))

    async def get_state(self, subject_id: str, refresh: bool = False) -> PresenceState | None:
        """Current state for ``subject_id``; None when the subject has no profile."""
        key = str(subject_id)
        if not refresh and key in self._cache:
            return self._cache[key]
        states = await self._load([key])
        return states.get(key)

    async def get_states(self, subject_ids, refresh: bool = False) -> dict[str, PresenceState]:
        keys = [str(s) for s in subject_ids]
        found = {k: self._cache[k] for k in keys if k in self._cache} if not refresh else {}
        missing = [k for k in keys if k not in found]
        if missing:
            found.update(await self._load(missing))
        return found

    async def is_provider(self, subject_id: str) -> bool:
        key = str(subject_id)
        if key not in self._roles:
            await self._load([key])
        return self._roles.get(key) == PROVIDER_ROLE

    async def _load(self, keys: list[str]) -> dict[str, PresenceState]:
        ids = []
        for key in keys:
            try:
                ids.append(as_uuid(key))
            except ValueError:
                continue
        if not ids:
            return {}

        async with self.session_factory() as session:
            result = await session.execute(select(Profile).where(Profile.subject_id.in_(ids)))
            rows = result.scalars().all()

        loaded: dict[str, PresenceState] = {}
        for row in rows:
            key = str(row.subject_id)
            self._roles[key] = row.role
            state = Presence.parse(row.state)
            if state is None:
                logger.warning("presence_unknown_state", subject_id=key, state=row.state)
                continue
            current = PresenceState(subject_id=key, state=state, updated_at=row.updated_at or utcnow())
            cached = self._cache.get(key)
            if cached is not None and cached.state != current.state:
                # Reconcile a change we missed an echo for.
                self._apply(current, origin="reload")
            else:
                self._cache[key] = current
            loaded[key] = current
        return loaded

    # -- writes --------------------------------------------------------

    async def set_state(self, subject_id: str, new_state, actor_id: str) -> PresenceState:
        """Persist a new state, then broadcast it locally and publish the echo.

        Only the subject may change its own state; the system actor may force
        a subject offline.  Raises ``Unauthorized`` or ``WriteError``; on
        either, nothing is broadcast.
        """
        state = new_state if isinstance(new_state, Presence) else Presence.parse(new_state)
        if state is None:
            raise ValueError(f"unknown presence state: {new_state!r}")

        key = str(subject_id)
        actor = str(actor_id)
        if actor != key and not (actor == SYSTEM_ACTOR and state is Presence.OFFLINE):
            logger.warning("presence_change_unauthorized", subject_id=key, actor_id=actor)
            raise Unauthorized(f"{actor} may not change presence of {key}")

        sid = as_uuid(key)
        now = utcnow()
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(Profile).where(Profile.subject_id == sid))
                profile = result.scalar_one_or_none()
                if profile is None:
                    raise WriteError(f"no profile for subject {key}")
                profile.state = state.value
                profile.updated_at = now
                self._roles[key] = profile.role
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.warning("presence_write_failed", subject_id=key, error=str(e))
            raise WriteError(f"presence write failed: {e}") from e

        presence = PresenceState(subject_id=key, state=state, updated_at=now)
        await self._announce(presence)
        logger.info("presence_changed", subject_id=key, state=state.value, actor_id=actor)
        return presence

    async def activate_provider(self, subject_id: str) -> PresenceState:
        """Make the subject a provider and bring it to ``available``.

        The first activation creates the profile row; later ones only reset
        the role and state, so repeating it is harmless.
        """
        key = str(subject_id)
        sid = as_uuid(key)
        now = utcnow()
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(Profile).where(Profile.subject_id == sid))
                profile = result.scalar_one_or_none()
                if profile is None:
                    session.add(
                        Profile(
                            subject_id=sid,
                            role=PROVIDER_ROLE,
                            state=Presence.AVAILABLE.value,
                            updated_at=now,
                            created_at=now,
                        )
                    )
                    logger.info("provider_profile_created", subject_id=key)
                else:
                    profile.role = PROVIDER_ROLE
                    profile.state = Presence.AVAILABLE.value
                    profile.updated_at = now
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.warning("provider_activation_failed", subject_id=key, error=str(e))
            raise WriteError(f"provider activation failed: {e}") from e

        self._roles[key] = PROVIDER_ROLE
        presence = PresenceState(subject_id=key, state=Presence.AVAILABLE, updated_at=now)
        await self._announce(presence)
        return presence

    async def _announce(self, presence: PresenceState) -> None:
        """Local broadcast first, then the best-effort echo to other processes."""
        self._apply(presence, origin="local")
        await publish_change(
            self.redis_client,
            self.settings.channel("presence"),
            {
                "subject_id": presence.subject_id,
                "state": presence.state.value,
                "updated_at": presence.updated_at.isoformat(),
                "origin": self.instance_id,
            },
        )

    # -- notification --------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _apply(self, presence: PresenceState, origin: str) -> bool:
        """Update the cache and notify listeners. Returns False when nothing changed."""
        cached = self._cache.get(presence.subject_id)
        if cached is not None and cached.state == presence.state:
            self._cache[presence.subject_id] = presence
            return False

        self._cache[presence.subject_id] = presence
        for listener in list(self._listeners):
            try:
                listener(presence)
            except Exception:
                logger.exception(
                    "presence_listener_failed",
                    subject_id=presence.subject_id,
                    origin=origin,
                )
        return True

    def apply_remote(self, payload: dict) -> bool:
        """Apply a presence echo. Arrival order wins, even over newer local state."""
        state = Presence.parse(payload.get("state"))
        subject_id = payload.get("subject_id")
        if state is None or not subject_id:
            logger.warning("presence_echo_invalid", payload=payload)
            return False

        updated_at = utcnow()
        raw = payload.get("updated_at")
        if raw:
            try:
                updated_at = datetime.fromisoformat(raw)
            except (TypeError, ValueError):
                logger.debug("presence_echo_bad_timestamp", subject_id=subject_id, raw=raw)
        updated_at = as_utc(updated_at)

        cached = self._cache.get(str(subject_id))
        if cached is not None and updated_at < cached.updated_at:
            logger.info(
                "presence_echo_out_of_order",
                subject_id=subject_id,
                echo_state=state.value,
                cached_state=cached.state.value,
            )
        return self._apply(
            PresenceState(subject_id=str(subject_id), state=state, updated_at=updated_at),
            origin="remote",
        )

    async def listen(self) -> None:
        """Consume presence echoes until cancelled."""
        if self.redis_client is None:
            return
        channel = self.settings.channel("presence")
        while True:
            pubsub = self.redis_client.pubsub()
            try:
                await pubsub.subscribe(channel)
                logger.info("presence_listener_subscribed", channel=channel)
                async for message in pubsub.listen():
                    payload = decode_change(message)
                    if payload is not None:
                        self.apply_remote(payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("presence_listener_error", error=str(e))
            finally:
                await pubsub.aclose()
            await asyncio.sleep(1.0)
