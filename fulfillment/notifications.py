"""
Notification delivery port. StoreNotifier persists notifications for the apps to pick up; push delivery
is a separate adapter behind the same interface.
"""
import logging
from abc import ABC, abstractmethod

from fulfillment.models import NOTIFICATIONS, Notification, utcnow
from fulfillment.store import EntityStore

logger = logging.getLogger(__name__)


class Notifier(ABC):
    @abstractmethod
    async def notify(
        self,
        recipient_id: str,
        template_key: str,
        params: dict | None = None,
        payload: dict | None = None,
        notification_id: str | None = None,
    ) -> None:
        ...


class StoreNotifier(Notifier):
    def __init__(self, store: EntityStore):
        self._store = store

    async def notify(
        self,
        recipient_id: str,
        template_key: str,
        params: dict | None = None,
        payload: dict | None = None,
        notification_id: str | None = None,
    ) -> None:
        notification = Notification(
            notification_id=notification_id or f"{recipient_id}:{template_key}:{utcnow().timestamp()}",
            recipient_id=recipient_id,
            template_key=template_key,
            params=params or {},
            payload=payload or {},
            created_at=utcnow(),
        )
        created = await self._store.insert(
            NOTIFICATIONS, notification.notification_id, notification.model_dump(mode="json")
        )
        if not created:
            logger.info("Notification %s already stored, skipping", notification.notification_id)
