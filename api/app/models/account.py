import datetime as dt
from decimal import Decimal

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base
from app.models.user import User

ITEM_STATUS_GOOD = "good"
ITEM_STATUS_BAD = "bad"


class PlaidItem(Base):
    """Represents a Plaid Item (one bank connection)."""
    __tablename__ = "plaid_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    plaid_item_id: Mapped[str] = mapped_column(String(255), unique=True)
    plaid_institution_id: Mapped[str | None] = mapped_column(String(100))
    institution_name: Mapped[str | None] = mapped_column(String(255))
    encrypted_access_token: Mapped[str] = mapped_column(Text)
    transactions_cursor: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(10), default=ITEM_STATUS_GOOD)  # good | bad
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    last_synced_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))

    user: Mapped[User] = relationship()
    accounts: Mapped[list["Account"]] = relationship(
        back_populates="plaid_item", cascade="all, delete-orphan"
    )


class Account(Base):
    """A bank, credit, brokerage, or loan account belonging to a Plaid Item."""
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_id: Mapped[int] = mapped_column(
        ForeignKey("plaid_items.id", ondelete="CASCADE"), index=True
    )
    plaid_account_id: Mapped[str] = mapped_column(String(255), unique=True)
    name: Mapped[str] = mapped_column(String(255))
    official_name: Mapped[str | None] = mapped_column(String(255))
    mask: Mapped[str | None] = mapped_column(String(10))   # last 4 digits
    current_balance: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    available_balance: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    iso_currency_code: Mapped[str | None] = mapped_column(String(3))
    unofficial_currency_code: Mapped[str | None] = mapped_column(String(10))
    type: Mapped[str] = mapped_column(String(50))          # depository, credit, loan, investment
    subtype: Mapped[str | None] = mapped_column(String(50))
    is_hidden: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    plaid_item: Mapped["PlaidItem"] = relationship(back_populates="accounts")
    transactions: Mapped[list["Transaction"]] = relationship(
        back_populates="account", cascade="all, delete-orphan"
    )


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), index=True
    )
    plaid_transaction_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    # Positive amounts are money leaving the account
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    iso_currency_code: Mapped[str | None] = mapped_column(String(3))
    date: Mapped[dt.date] = mapped_column(Date, index=True)
    authorized_date: Mapped[dt.date | None] = mapped_column(Date)
    name: Mapped[str] = mapped_column(String(500))
    merchant_name: Mapped[str | None] = mapped_column(String(255))
    logo_url: Mapped[str | None] = mapped_column(Text)
    website: Mapped[str | None] = mapped_column(Text)
    payment_channel: Mapped[str | None] = mapped_column(String(50))

    # Categorization
    personal_finance_category: Mapped[str | None] = mapped_column(String(100))
    personal_finance_subcategory: Mapped[str | None] = mapped_column(String(100))

    pending: Mapped[bool] = mapped_column(Boolean, default=False)
    pending_transaction_id: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    account: Mapped["Account"] = relationship(back_populates="transactions")
