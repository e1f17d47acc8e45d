"""Messaging models for outbound notifications."""

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import NotificationType


class NotificationMessage(BaseModel):
    """Queued notification for the external email/Telegram delivery worker."""

    model_config = ConfigDict(use_enum_values=True)

    message_type: NotificationType = Field(..., description="Type of notification")
    audience: Literal["admin", "customer"] = Field(..., description="Who should receive it")
    user_id: Optional[str] = None
    order_id: Optional[str] = None
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), description="Message timestamp"
    )
    data: Dict[str, Any] = Field(default_factory=dict, description="Message payload")
    correlation_id: Optional[str] = Field(
        default=None, description="Correlation ID for tracing"
    )
