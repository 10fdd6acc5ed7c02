"""
Outbound side channels for the detention core.

Core operations collect guardian/admin notifications and live events in an Outbox while
they mutate state. Once the core change is committed, NotificationDispatcher.dispatch
delivers them; any failure is logged and never propagates to the caller.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from discipline.auth.models import ADMIN_ROLES, User
from discipline.core.events import EventBroadcaster, broadcaster as default_broadcaster
from discipline.core.models import Notification

logger = logging.getLogger(__name__)


CATEGORY_DETENTION_ASSIGNED = "detention_assigned"
CATEGORY_DETENTION_ATTENDANCE = "detention_attendance"
CATEGORY_DETENTION_REASSIGNED = "detention_reassigned"
CATEGORY_DETENTION_QUEUED = "detention_queued"
CATEGORY_DETENTION_CANCELLED = "detention_cancelled"


@dataclass
class OutboundNotification:
    user_id: Optional[UUID]
    category: str
    title: str
    message: str
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[UUID] = None
    # Fan out to every tenant administrator instead of user_id
    to_admins: bool = False


@dataclass
class Outbox:
    tenant_id: UUID
    notifications: List[OutboundNotification] = field(default_factory=list)
    events: List[Dict[str, Any]] = field(default_factory=list)

    def notify(
        self,
        user_id: Optional[UUID],
        category: str,
        title: str,
        message: str,
        related_entity_type: Optional[str] = None,
        related_entity_id: Optional[UUID] = None,
    ) -> None:
        # Students without a linked guardian simply get no message
        if user_id is None:
            return
        self.notifications.append(
            OutboundNotification(user_id, category, title, message, related_entity_type, related_entity_id)
        )

    def notify_admins(
        self,
        category: str,
        title: str,
        message: str,
        related_entity_type: Optional[str] = None,
        related_entity_id: Optional[UUID] = None,
    ) -> None:
        self.notifications.append(
            OutboundNotification(None, category, title, message, related_entity_type, related_entity_id, to_admins=True)
        )

    def broadcast(self, event_type: str, **payload: Any) -> None:
        event = {"type": event_type}
        event.update({k: (str(v) if isinstance(v, UUID) else v) for k, v in payload.items()})
        self.events.append(event)

    def extend(self, other: "Outbox") -> None:
        self.notifications.extend(other.notifications)
        self.events.extend(other.events)

    def clear(self) -> None:
        self.notifications.clear()
        self.events.clear()


class NotificationDispatcher:
    """Persists in-app notifications and publishes live events after a core commit."""

    def __init__(self, events: Optional[EventBroadcaster] = None):
        self.events = events or default_broadcaster

    async def admin_user_ids(self, db: AsyncSession, tenant_id: UUID) -> List[UUID]:
        result = await db.execute(
            select(User.id).where(
                User.tenant_id == tenant_id,
                User.role.in_(ADMIN_ROLES),
                User.status == "ACTIVE",
            )
        )
        return list(result.scalars().all())

    async def notify(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        user_id: UUID,
        category: str,
        title: str,
        message: str,
        related_entity_type: Optional[str] = None,
        related_entity_id: Optional[UUID] = None,
    ) -> Notification:
        """Stage one in-app notification. Caller must commit."""
        row = Notification(
            tenant_id=tenant_id,
            user_id=user_id,
            category=category,
            title=title,
            message=message,
            related_entity_type=related_entity_type,
            related_entity_id=related_entity_id,
        )
        db.add(row)
        return row

    async def dispatch(self, db: AsyncSession, outbox: Outbox) -> int:
        """Deliver everything collected in the outbox. Returns the number of notifications stored."""
        stored = 0
        if outbox.notifications:
            try:
                admin_ids: Optional[List[UUID]] = None
                for item in outbox.notifications:
                    if item.to_admins:
                        if admin_ids is None:
                            admin_ids = await self.admin_user_ids(db, outbox.tenant_id)
                        recipients = admin_ids
                    else:
                        recipients = [item.user_id]
                    for user_id in recipients:
                        await self.notify(
                            db,
                            outbox.tenant_id,
                            user_id,
                            item.category,
                            item.title,
                            item.message,
                            item.related_entity_type,
                            item.related_entity_id,
                        )
                        stored += 1
                await db.commit()
            except Exception:
                logger.exception("Failed to store %d detention notifications", len(outbox.notifications))
                await db.rollback()
                stored = 0

        for event in outbox.events:
            try:
                self.events.publish(outbox.tenant_id, event)
            except Exception:
                logger.exception("Failed to broadcast %s event", event.get("type"))

        outbox.clear()
        return stored
