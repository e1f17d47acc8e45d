"""Notification hand-off.

Emails and Telegram messages are delivered by a separate worker; this
service only enqueues the events on a Redis list. Failing to enqueue is
logged and never fails the operation that triggered it.
"""

from typing import Any, Dict, Optional

from config import ApplicationConfig
from models import NotificationMessage, NotificationType
from utils import create_contextual_logger, get_correlation_id, log_exception
from .redis_client import RedisClient


class NotificationService:
    def __init__(self, config: ApplicationConfig, redis_client: RedisClient) -> None:
        self.config = config
        self.redis_client = redis_client
        self.logger = create_contextual_logger(__name__, service="notifications")

    async def notify(
        self,
        message_type: NotificationType,
        audience: str,
        order_id: Optional[str] = None,
        user_id: Optional[str] = None,
        **data: Any,
    ) -> bool:
        message = NotificationMessage(
            message_type=message_type,
            audience=audience,
            order_id=order_id,
            user_id=user_id,
            data=data,
            correlation_id=get_correlation_id(),
        )
        try:
            await self.redis_client.push_message(
                self.config.notification_queue, message, correlation_id=message.correlation_id
            )
            return True
        except Exception as e:
            log_exception(
                self.logger,
                e,
                "Failed to enqueue notification",
                message_type=message.message_type,
                order_id=order_id,
            )
            return False

    async def notify_admin(self, message_type: NotificationType, order_id: Optional[str] = None, **data: Any) -> bool:
        return await self.notify(message_type, "admin", order_id=order_id, **data)

    async def notify_customer(
        self, message_type: NotificationType, user_id: str, order_id: Optional[str] = None, **data: Any
    ) -> bool:
        return await self.notify(message_type, "customer", order_id=order_id, user_id=user_id, **data)

    async def manual_provisioning_required(self, order_id: str, user_id: str, details: Dict[str, Any]) -> None:
        await self.notify_admin(NotificationType.MANUAL_PROVISIONING_REQUIRED, order_id=order_id, user_id=user_id, **details)
        await self.notify_customer(NotificationType.ORDER_PROCESSING, user_id=user_id, order_id=order_id)
