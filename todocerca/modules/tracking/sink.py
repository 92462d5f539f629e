"""Location sink: persists the latest position per (subject, group).

Rows are upserted, never appended (hardware history is the exception and
lives in ``append_history``).  Providers additionally get a row in the
provider-only mirror that the marketplace map reads; that mirror is
best-effort and never fails the primary write.
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from modules.tracking.domain import Position, as_utc, as_uuid, utcnow
from modules.tracking.errors import WriteError
from shared.config import Settings, get_settings
from shared.models.location import ProviderLocation, SubjectLocation
from shared.models.tracker import HistoryPoint
from shared.redis import publish_change

logger = structlog.get_logger()

PROVIDER_ROLE = "provider"


class WriteThrottle:
    """Drops writes for a key arriving sooner than ``min_interval`` after the last one."""

    def __init__(self, min_interval: float, clock=time.monotonic):
        self.min_interval = min_interval
        self._clock = clock
        self._last: dict[tuple, float] = {}

    def allow(self, key: tuple) -> bool:
        now = self._clock()
        last = self._last.get(key)
        if last is not None and now - last < self.min_interval:
            return False
        self._last[key] = now
        return True

    def reset(self, key: tuple | None = None) -> None:
        if key is None:
            self._last.clear()
        else:
            self._last.pop(key, None)


class LocationSink:
    def __init__(self, session_factory, redis_client=None, settings: Settings | None = None):
        self.session_factory = session_factory
        self.redis_client = redis_client
        self.settings = settings or get_settings()
        # Newest timestamp written per (subject, group), for cheap stale drops
        self._last_written: dict[tuple[str, str | None], datetime] = {}

    async def write_location(
        self,
        subject_id: str,
        position: Position,
        group_id: str | None = None,
        role: str | None = None,
    ) -> bool:
        """Upsert the latest position for ``(subject_id, group_id)``.

        Returns False when the position is older than what is already stored.
        Raises ValueError for out-of-range coordinates and WriteError when the
        backend write fails.
        """
        position.validate()
        sid = as_uuid(subject_id)
        gid = as_uuid(group_id) if group_id is not None else None
        key = (str(sid), str(gid) if gid else None)

        last = self._last_written.get(key)
        if last is not None and position.timestamp < last:
            logger.debug("location_write_stale", subject_id=key[0], group_id=key[1])
            return False

        try:
            written = await self._upsert(sid, gid, position)
        except IntegrityError:
            # A concurrent writer inserted the row first; the retry updates it.
            logger.info("location_upsert_conflict", subject_id=key[0], group_id=key[1])
            try:
                written = await self._upsert(sid, gid, position)
            except SQLAlchemyError as e:
                raise WriteError(f"location write failed: {e}") from e
        except (SQLAlchemyError, OSError) as e:
            logger.warning(
                "location_write_failed",
                subject_id=key[0],
                group_id=key[1],
                error=str(e),
            )
            raise WriteError(f"location write failed: {e}") from e

        if not written:
            logger.debug("location_write_stale", subject_id=key[0], group_id=key[1])
            return False

        self._last_written[key] = position.timestamp
        await publish_change(
            self.redis_client,
            self.settings.channel("locations"),
            {
                "table": SubjectLocation.__tablename__,
                "subject_id": key[0],
                "group_id": key[1],
                "updated_at": position.timestamp.isoformat(),
            },
        )

        if role == PROVIDER_ROLE:
            await self._mirror_provider(sid, position)
        return True

    async def _upsert(self, sid: uuid.UUID, gid: uuid.UUID | None, position: Position) -> bool:
        now = utcnow()
        async with self.session_factory() as session:
            if gid is None:
                clause = SubjectLocation.group_id.is_(None)
            else:
                clause = SubjectLocation.group_id == gid
            result = await session.execute(
                select(SubjectLocation).where(SubjectLocation.subject_id == sid, clause)
            )
            row = result.scalar_one_or_none()

            if row is None:
                row = SubjectLocation(
                    subject_id=sid,
                    group_id=gid,
                    latitude=position.latitude,
                    longitude=position.longitude,
                    accuracy_m=position.accuracy,
                    speed=position.speed,
                    course=position.course,
                    recorded_at=position.timestamp,
                    updated_at=now,
                )
                session.add(row)
            else:
                if row.recorded_at is not None and position.timestamp < as_utc(row.recorded_at):
                    return False
                row.latitude = position.latitude
                row.longitude = position.longitude
                row.accuracy_m = position.accuracy
                row.speed = position.speed
                row.course = position.course
                row.recorded_at = position.timestamp
                row.updated_at = now

            await session.commit()
        return True

    async def _mirror_provider(self, sid: uuid.UUID, position: Position) -> None:
        """Best-effort upsert into the provider-only mirror."""
        now = utcnow()
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(ProviderLocation).where(ProviderLocation.subject_id == sid)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    session.add(
                        ProviderLocation(
                            subject_id=sid,
                            latitude=position.latitude,
                            longitude=position.longitude,
                            updated_at=now,
                        )
                    )
                else:
                    row.latitude = position.latitude
                    row.longitude = position.longitude
                    row.updated_at = now
                await session.commit()
        except Exception as e:
            logger.warning("provider_mirror_failed", subject_id=str(sid), error=str(e))
            return

        await publish_change(
            self.redis_client,
            self.settings.channel("locations"),
            {
                "table": ProviderLocation.__tablename__,
                "subject_id": str(sid),
                "updated_at": now.isoformat(),
            },
        )

    async def read_location(self, subject_id: str, group_id: str | None = None) -> Position | None:
        """Return the stored position for ``(subject_id, group_id)``, if any."""
        sid = as_uuid(subject_id)
        gid = as_uuid(group_id) if group_id is not None else None
        async with self.session_factory() as session:
            if gid is None:
                clause = SubjectLocation.group_id.is_(None)
            else:
                clause = SubjectLocation.group_id == gid
            result = await session.execute(
                select(SubjectLocation).where(SubjectLocation.subject_id == sid, clause)
            )
            row = result.scalar_one_or_none()
        if row is None:
            return None
        return Position(
            subject_id=str(row.subject_id),
            latitude=row.latitude,
            longitude=row.longitude,
            timestamp=row.recorded_at or row.updated_at,
            group_id=str(row.group_id) if row.group_id else None,
            accuracy=row.accuracy_m,
            speed=row.speed,
            course=row.course,
        )

    async def append_history(self, tracker_id: str, position: Position, **telemetry) -> None:
        """Append one hardware history point. ``telemetry`` fills the optional columns."""
        position.validate()
        try:
            async with self.session_factory() as session:
                session.add(
                    HistoryPoint(
                        tracker_id=as_uuid(tracker_id),
                        latitude=position.latitude,
                        longitude=position.longitude,
                        speed=position.speed,
                        course=position.course,
                        timestamp=position.timestamp,
                        **telemetry,
                    )
                )
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.warning("history_append_failed", tracker_id=str(tracker_id), error=str(e))
            raise WriteError(f"history append failed: {e}") from e
