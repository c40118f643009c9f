from datetime import datetime
from sqlalchemy import String, DateTime, ForeignKey, Integer, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base
from models.enums import PayoutMethod, PayoutStatus, enum_column


class Payout(Base):
    __tablename__ = "payouts"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    store_id: Mapped[int] = mapped_column(ForeignKey("stores.id", ondelete="RESTRICT"), index=True)
    amount: Mapped[int] = mapped_column(Integer)  # gross, debited from the store balance
    fee: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="XOF")
    status: Mapped[PayoutStatus] = mapped_column(enum_column(PayoutStatus), default=PayoutStatus.PENDING, index=True)
    payout_method: Mapped[PayoutMethod] = mapped_column(enum_column(PayoutMethod))
    payout_details: Mapped[dict] = mapped_column(JSON)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    transaction_id: Mapped[int | None] = mapped_column(ForeignKey("transactions.id", ondelete="RESTRICT"), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    store = relationship("Store")
    transaction = relationship("Transaction")

    @property
    def net_amount(self) -> int:
        return self.amount - self.fee
