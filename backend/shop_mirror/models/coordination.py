"""
Coordination gate state - resumable wait record for a source product.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from shop_mirror.core.database import Base
from shop_mirror.models.mirror import JsonType


class GateStatus(str, Enum):
    WAITING = "waiting"
    RELEASED = "released"
    TIMED_OUT = "timed_out"


class CoordinationGate(Base):
    """
    Persisted attempt counter for the coordination gate.

    Lives outside the job so that whichever worker picks the job up again
    sees the same attempt count and eligibility time.
    """

    __tablename__ = "coordination_gates"
    __table_args__ = (
        UniqueConstraint("source_shop_id", "source_product_id", name="uq_coordination_gates_product"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    source_shop_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    source_product_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=GateStatus.WAITING.value,
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_eligible_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    last_pending: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(
        JsonType,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<CoordinationGate {self.source_product_id} {self.status} attempts={self.attempts}>"
