from datetime import datetime
from sqlalchemy import String, DateTime, ForeignKey, Integer, JSON, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base
from models.enums import (
    LedgerAccount,
    TransactionDirection,
    TransactionStatus,
    TransactionType,
    enum_column,
)


class Transaction(Base):
    """Immutable ledger of every store balance change. Source of truth for balances.

    Rows are never edited after insert apart from ``status`` and ``reference``;
    a reversal is always a new row in the opposite direction.
    """

    __tablename__ = "transactions"
    __table_args__ = (CheckConstraint("amount >= 0", name="ck_transaction_amount_positive"),)

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    store_id: Mapped[int] = mapped_column(ForeignKey("stores.id", ondelete="RESTRICT"), index=True)
    order_id: Mapped[int | None] = mapped_column(ForeignKey("orders.id", ondelete="RESTRICT"), nullable=True, index=True)
    payout_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)

    type: Mapped[TransactionType] = mapped_column(enum_column(TransactionType))
    direction: Mapped[TransactionDirection] = mapped_column(enum_column(TransactionDirection))
    account: Mapped[LedgerAccount] = mapped_column(enum_column(LedgerAccount))
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), default="XOF")

    # Snapshots of the account balance around this entry
    balance_before: Mapped[int] = mapped_column(Integer)
    balance_after: Mapped[int] = mapped_column(Integer)

    status: Mapped[TransactionStatus] = mapped_column(enum_column(TransactionStatus), default=TransactionStatus.PENDING)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str] = mapped_column(String(500))
    txn_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    store = relationship("Store")
    order = relationship("Order")
