"""
Shop and ShopConnection models - the replication topology.
"""
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shop_mirror.core.database import Base

if TYPE_CHECKING:
    from shop_mirror.models.mirror import ProductMirror


class Shop(Base):
    """A Shopify shop taking part in replication, with encrypted access token storage."""

    __tablename__ = "shops"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    domain: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        index=True,
        nullable=False,
    )
    access_token_encrypted: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    api_version: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
    )

    # Role in the topology
    is_source: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    location_legacy_id: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    # Relationships
    outgoing_connections: Mapped[list["ShopConnection"]] = relationship(
        "ShopConnection",
        foreign_keys="ShopConnection.source_shop_id",
        back_populates="source",
    )
    mirrors_as_target: Mapped[list["ProductMirror"]] = relationship(
        "ProductMirror",
        foreign_keys="ProductMirror.target_shop_id",
        back_populates="target_shop",
    )

    @property
    def location_gid(self) -> Optional[str]:
        if self.location_legacy_id is None:
            return None
        return f"gid://shopify/Location/{self.location_legacy_id}"

    def __repr__(self) -> str:
        return f"<Shop {self.domain}>"


class ShopConnection(Base):
    """Directed replication edge: source shop -> target shop."""

    __tablename__ = "shop_connections"
    __table_args__ = (
        UniqueConstraint("source_shop_id", "target_shop_id", name="uq_shop_connections_pair"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    source_shop_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("shops.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    target_shop_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("shops.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    source: Mapped["Shop"] = relationship(
        "Shop",
        foreign_keys=[source_shop_id],
        back_populates="outgoing_connections",
    )
    target: Mapped["Shop"] = relationship(
        "Shop",
        foreign_keys=[target_shop_id],
    )

    def __repr__(self) -> str:
        return f"<ShopConnection {self.source_shop_id} -> {self.target_shop_id}>"
