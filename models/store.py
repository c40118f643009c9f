from datetime import datetime
from sqlalchemy import String, Boolean, DateTime, Text, Integer, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base
from models.enums import StorePlan, enum_column


class Store(Base):
    __tablename__ = "stores"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(150), index=True)
    slug: Mapped[str] = mapped_column(String(150), unique=True, index=True)

    # Vendor who owns the store
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), index=True)

    # Subscription plan drives the commission rate
    plan: Mapped[StorePlan] = mapped_column(enum_column(StorePlan), default=StorePlan.FREE)

    # Status
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_suspended: Mapped[bool] = mapped_column(Boolean, default=False)
    suspension_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Financial projection of the ledger, minor units. Written only by services.ledger.
    balance: Mapped[int] = mapped_column(Integer, default=0)
    pending_balance: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="XOF")
    total_orders: Mapped[int] = mapped_column(Integer, default=0)

    # Flat shipping quote applied to every order
    shipping_fee: Mapped[int] = mapped_column(Integer, default=0)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    owner = relationship("User")

    @property
    def is_open(self) -> bool:
        return self.is_active and not self.is_suspended
