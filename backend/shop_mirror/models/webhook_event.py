"""
Webhook event model - inbound product deliveries, deduplicated by delivery id.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import DateTime, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from shop_mirror.core.database import Base
from shop_mirror.models.mirror import JsonType


class WebhookEventStatus(str, Enum):
    RECEIVED = "received"
    DISPATCHED = "dispatched"
    IGNORED = "ignored"


class WebhookEvent(Base):
    """A single webhook delivery as received from Shopify."""

    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    webhook_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
    )
    topic: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    shop_domain: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=WebhookEventStatus.RECEIVED.value,
        nullable=False,
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.topic} {self.webhook_id}>"
