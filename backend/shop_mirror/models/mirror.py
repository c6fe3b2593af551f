"""
Mirror models - the persisted mapping between source and target catalog entities.
"""
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from shop_mirror.core.database import Base

if TYPE_CHECKING:
    from shop_mirror.models.shop import Shop

JsonType = JSON().with_variant(JSONB(), "postgresql")


class ProductMirror(Base):
    """One source product mirrored onto one target shop."""

    __tablename__ = "product_mirrors"
    __table_args__ = (
        UniqueConstraint(
            "source_shop_id",
            "source_product_id",
            "target_shop_id",
            name="uq_product_mirrors_source_target",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    source_shop_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("shops.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    source_product_id: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        index=True,
    )
    source_product_gid: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    target_shop_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("shops.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    target_product_id: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
    )
    target_product_gid: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    last_snapshot: Mapped[Optional[dict[str, Any]]] = mapped_column(
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

    target_shop: Mapped["Shop"] = relationship(
        "Shop",
        foreign_keys=[target_shop_id],
        back_populates="mirrors_as_target",
    )
    variants: Mapped[list["VariantMirror"]] = relationship(
        "VariantMirror",
        back_populates="product_mirror",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @validates("target_product_gid")
    def _keep_target_gid(self, key: str, value: Optional[str]) -> Optional[str]:
        # A mirror that points at a remote product never loses that pointer.
        if value is None and self.target_product_gid is not None:
            raise ValueError("target_product_gid cannot be cleared once set")
        return value

    def __repr__(self) -> str:
        return f"<ProductMirror {self.source_product_id} -> {self.target_product_gid}>"


class VariantMirror(Base):
    """One source variant mapped to one target variant, keyed by canonical options key."""

    __tablename__ = "variant_mirrors"
    __table_args__ = (
        UniqueConstraint(
            "product_mirror_id",
            "source_variant_id",
            name="uq_variant_mirrors_product_source_variant",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    product_mirror_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("product_mirrors.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    source_variant_id: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
    )
    source_options_key: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
        default="",
        index=True,
    )
    target_variant_id: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
    )
    target_variant_gid: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    inventory_item_gid: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # Fingerprints
    variant_fingerprint: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    inventory_fingerprint: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    last_snapshot: Mapped[Optional[dict[str, Any]]] = mapped_column(
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

    product_mirror: Mapped["ProductMirror"] = relationship(
        "ProductMirror",
        back_populates="variants",
    )

    def __repr__(self) -> str:
        return f"<VariantMirror {self.source_options_key!r} -> {self.target_variant_gid}>"
