"""Alert persistence and the read/resolve actions.

Alerts are an append-only audit trail: the only mutations are the read and
resolved flags.
"""

from __future__ import annotations

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from modules.tracking.domain import AlertRecord, as_uuid, utcnow
from modules.tracking.errors import WriteError
from shared.config import Settings, get_settings
from shared.models.alert import Alert
from shared.redis import publish_change
from shared.schemas.notifications import AlertNotification

logger = structlog.get_logger()

ALERT_LIST_LIMIT = 100


def alert_to_dict(alert: Alert) -> dict:
    return {
        "id": str(alert.id),
        "subject_device_id": str(alert.subject_device_id),
        "group_id": str(alert.group_id),
        "kind": alert.kind,
        "title": alert.title,
        "message": alert.message,
        "latitude": alert.latitude,
        "longitude": alert.longitude,
        "speed": alert.speed,
        "geofence_id": str(alert.geofence_id) if alert.geofence_id else None,
        "is_read": alert.is_read,
        "is_resolved": alert.is_resolved,
        "resolved_at": alert.resolved_at.isoformat() if alert.resolved_at else None,
        "created_at": alert.created_at.isoformat() if alert.created_at else None,
    }


class AlertRecorder:
    """Inserts alert rows and announces them on the alerts channel."""

    def __init__(self, session_factory, redis_client=None, settings: Settings | None = None):
        self.session_factory = session_factory
        self.redis_client = redis_client
        self.settings = settings or get_settings()

    async def record(self, records: list[AlertRecord]) -> list[Alert]:
        if not records:
            return []

        rows = [
            Alert(
                subject_device_id=as_uuid(r.subject_device_id),
                group_id=as_uuid(r.group_id),
                kind=r.kind,
                title=r.title,
                message=r.message,
                latitude=r.latitude,
                longitude=r.longitude,
                speed=r.speed,
                geofence_id=as_uuid(r.geofence_id) if r.geofence_id else None,
                is_read=False,
                is_resolved=False,
                created_at=utcnow(),
            )
            for r in records
        ]
        try:
            async with self.session_factory() as session:
                session.add_all(rows)
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.warning("alert_insert_failed", count=len(rows), error=str(e))
            raise WriteError(f"alert insert failed: {e}") from e

        for row in rows:
            notification = AlertNotification(
                alert_id=str(row.id),
                group_id=str(row.group_id),
                subject_device_id=str(row.subject_device_id),
                kind=row.kind,
                title=row.title,
                message=row.message,
                geofence_id=str(row.geofence_id) if row.geofence_id else None,
                latitude=row.latitude,
                longitude=row.longitude,
            )
            await publish_change(
                self.redis_client,
                self.settings.channel("alerts"),
                notification.model_dump(),
            )
            logger.info(
                "alert_recorded",
                alert_id=str(row.id),
                kind=row.kind,
                group_id=str(row.group_id),
            )
        return rows


class AlertTools:
    """Read and resolve actions for a group's alert feed."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def list_alerts(self, group_id: str, unread_only: bool = False) -> dict:
        gid = as_uuid(group_id)
        async with self.session_factory() as session:
            stmt = select(Alert).where(Alert.group_id == gid)
            if unread_only:
                stmt = stmt.where(Alert.is_read.is_(False))
            result = await session.execute(
                stmt.order_by(Alert.created_at.desc()).limit(ALERT_LIST_LIMIT)
            )
            alerts = result.scalars().all()

        items = [alert_to_dict(a) for a in alerts]
        return {
            "alerts": items,
            "unread_count": sum(1 for a in items if not a["is_read"]),
        }

    async def mark_read(self, alert_id: str) -> dict:
        async with self.session_factory() as session:
            result = await session.execute(select(Alert).where(Alert.id == as_uuid(alert_id)))
            alert = result.scalar_one_or_none()
            if alert is None:
                return {"error": f"Alert {alert_id} not found"}
            alert.is_read = True
            await session.commit()
        return {"success": True, "alert_id": str(alert_id)}

    async def mark_all_read(self, group_id: str) -> dict:
        async with self.session_factory() as session:
            result = await session.execute(
                update(Alert)
                .where(Alert.group_id == as_uuid(group_id), Alert.is_read.is_(False))
                .values(is_read=True)
            )
            await session.commit()
        return {"success": True, "updated": result.rowcount or 0}

    async def resolve(self, alert_id: str, resolved_by: str) -> dict:
        async with self.session_factory() as session:
            result = await session.execute(select(Alert).where(Alert.id == as_uuid(alert_id)))
            alert = result.scalar_one_or_none()
            if alert is None:
                return {"error": f"Alert {alert_id} not found"}
            alert.is_resolved = True
            alert.resolved_at = utcnow()
            alert.resolved_by = as_uuid(resolved_by)
            await session.commit()
        logger.info("alert_resolved", alert_id=str(alert_id), resolved_by=str(resolved_by))
        return {"success": True, "alert_id": str(alert_id)}
