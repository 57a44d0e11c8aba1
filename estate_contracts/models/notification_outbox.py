from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import Index, Integer, String, Text, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from estate_contracts.db.base import Base
from estate_contracts.db.types import JSONType, UTCDateTime, closed_enum
from estate_contracts.models.enums import NotificationEvent, OutboxStatus


class NotificationOutboxEntry(Base):
    """
    Notification decided by a transition, waiting for delivery.

    Written in the same transaction as the transition; delivered afterwards
    by the dispatcher, so a failing channel never undoes a committed state.
    """

    __tablename__ = "notification_outbox"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    event_type: Mapped[NotificationEvent] = mapped_column(closed_enum(NotificationEvent, length=48), nullable=False)
    payload_json: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    recipients_json: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)

    status: Mapped[OutboxStatus] = mapped_column(
        closed_enum(OutboxStatus, length=16),
        nullable=False,
        default=OutboxStatus.PENDING,
        server_default=text(f"'{OutboxStatus.PENDING.value}'"),
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # microsecond precision: delivery order follows insertion order
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    # set while a drain is sending the row; lapses if that drain dies
    claimed_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_notification_outbox_status_created", "status", "created_at"),
    )
