"""
SQLAlchemy ORM models (Layer A audit, Layer B canonical accounts, Layer C summaries)
"""
from decimal import Decimal
from datetime import date, datetime
from sqlalchemy import String, Integer, Text, TIMESTAMP, Date, func, Boolean, Numeric, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from finsync.infrastructure.db.session import Base


class User(Base):
    """
    End user of the aggregator, identified by a stable external identity (phone number)
    """
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    external_identity: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_status: Mapped[str | None] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


# ============================================================================
# Layer A: raw capture (append-only)
# ============================================================================


class AuditCall(Base):
    """
    One row per upstream call. Never updated.
    """
    __tablename__ = "audit_calls"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True
    )

    endpoint: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    method: Mapped[str] = mapped_column(String(10), nullable=False, server_default="POST")
    request_payload: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    response_payload: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    called_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        index=True
    )


# ============================================================================
# Layer B: canonical providers and accounts (upsert by stable key)
# ============================================================================


class Provider(Base):
    """
    Financial information provider (bank, AMC, depository)
    """
    __tablename__ = "providers"

    id: Mapped[int] = mapped_column(primary_key=True)
    provider_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    provider_name: Mapped[str] = mapped_column(String(255), nullable=False, server_default="")

    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


class Account(Base):
    """
    Canonical account ledger: exactly one row per external_account_id
    """
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    external_account_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    account_ref_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    masked_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    account_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    fi_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)  # DEPOSIT, MUTUAL_FUNDS, ...
    provider_id: Mapped[str | None] = mapped_column(
        String(128), ForeignKey("providers.provider_id"), nullable=True
    )
    data_fetched: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false")
    last_fetch_time: Mapped[str | None] = mapped_column(String(64), nullable=True)  # as reported upstream
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="true")

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


# ============================================================================
# Layer C: derived summaries (overwrite on account_id), insights and snapshots
# ============================================================================


class DepositSummary(Base):
    """
    Savings / current account summary
    """
    __tablename__ = "deposit_summaries"

    id: Mapped[int] = mapped_column(primary_key=True)
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), unique=True, nullable=False
    )

    current_balance: Mapped[Decimal | None] = mapped_column(Numeric(precision=20, scale=2), nullable=True)
    available_balance: Mapped[Decimal | None] = mapped_column(Numeric(precision=20, scale=2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, server_default="INR")
    interest_rate: Mapped[Decimal | None] = mapped_column(Numeric(precision=8, scale=4), nullable=True)
    branch: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ifsc_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    opening_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    last_fetch_time: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)


class TermDepositSummary(Base):
    """
    Fixed (term) deposit summary
    """
    __tablename__ = "term_deposit_summaries"

    id: Mapped[int] = mapped_column(primary_key=True)
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), unique=True, nullable=False
    )

    principal_amount: Mapped[Decimal | None] = mapped_column(Numeric(precision=20, scale=2), nullable=True)
    current_balance: Mapped[Decimal | None] = mapped_column(Numeric(precision=20, scale=2), nullable=True)
    maturity_amount: Mapped[Decimal | None] = mapped_column(Numeric(precision=20, scale=2), nullable=True)
    maturity_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    interest_rate: Mapped[Decimal | None] = mapped_column(Numeric(precision=8, scale=4), nullable=True)
    tenure_months: Mapped[int | None] = mapped_column(Integer, nullable=True)

    last_fetch_time: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)


class RecurringDepositSummary(Base):
    """
    Recurring deposit summary
    """
    __tablename__ = "recurring_deposit_summaries"

    id: Mapped[int] = mapped_column(primary_key=True)
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), unique=True, nullable=False
    )

    current_balance: Mapped[Decimal | None] = mapped_column(Numeric(precision=20, scale=2), nullable=True)
    recurring_amount: Mapped[Decimal | None] = mapped_column(Numeric(precision=20, scale=2), nullable=True)
    maturity_amount: Mapped[Decimal | None] = mapped_column(Numeric(precision=20, scale=2), nullable=True)
    maturity_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    interest_rate: Mapped[Decimal | None] = mapped_column(Numeric(precision=8, scale=4), nullable=True)
    installments_paid: Mapped[int | None] = mapped_column(Integer, nullable=True)

    last_fetch_time: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)


class InvestmentSummary(Base):
    """
    Market-linked holdings summary (mutual funds, equities, ETF, NPS)
    """
    __tablename__ = "investment_summaries"

    id: Mapped[int] = mapped_column(primary_key=True)
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), unique=True, nullable=False
    )

    fi_type: Mapped[str] = mapped_column(String(32), nullable=False)
    current_value: Mapped[Decimal | None] = mapped_column(Numeric(precision=20, scale=2), nullable=True)
    invested_value: Mapped[Decimal | None] = mapped_column(Numeric(precision=20, scale=2), nullable=True)
    returns_percentage: Mapped[Decimal | None] = mapped_column(Numeric(precision=10, scale=2), nullable=True)
    holdings_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")

    last_fetch_time: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)


class Insight(Base):
    """
    Balance statistics for one period. Append-only.
    """
    __tablename__ = "insights"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    account_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=True
    )

    period_from: Mapped[date] = mapped_column(Date, nullable=False)
    period_to: Mapped[date] = mapped_column(Date, nullable=False)
    frequency: Mapped[str] = mapped_column(String(16), nullable=False)  # WEEKLY, MONTHLY, YEARLY

    avg_balance: Mapped[Decimal] = mapped_column(Numeric(precision=20, scale=2), nullable=False)
    min_balance: Mapped[Decimal] = mapped_column(Numeric(precision=20, scale=2), nullable=False)
    max_balance: Mapped[Decimal] = mapped_column(Numeric(precision=20, scale=2), nullable=False)
    start_balance: Mapped[Decimal] = mapped_column(Numeric(precision=20, scale=2), nullable=False)
    end_balance: Mapped[Decimal] = mapped_column(Numeric(precision=20, scale=2), nullable=False)
    change: Mapped[Decimal] = mapped_column(Numeric(precision=20, scale=2), nullable=False)
    percent_change: Mapped[Decimal] = mapped_column(Numeric(precision=10, scale=2), nullable=False)

    computed_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)


class PortfolioSnapshot(Base):
    """
    Point-in-time valuation of a user's holdings. Append-only time series.
    """
    __tablename__ = "portfolio_snapshots"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    total_net_worth: Mapped[Decimal] = mapped_column(Numeric(precision=20, scale=2), nullable=False)
    deposits_value: Mapped[Decimal] = mapped_column(Numeric(precision=20, scale=2), nullable=False, server_default="0")
    term_deposits_value: Mapped[Decimal] = mapped_column(Numeric(precision=20, scale=2), nullable=False, server_default="0")
    recurring_deposits_value: Mapped[Decimal] = mapped_column(Numeric(precision=20, scale=2), nullable=False, server_default="0")
    mutual_funds_value: Mapped[Decimal] = mapped_column(Numeric(precision=20, scale=2), nullable=False, server_default="0")
    equities_value: Mapped[Decimal] = mapped_column(Numeric(precision=20, scale=2), nullable=False, server_default="0")
    etf_value: Mapped[Decimal] = mapped_column(Numeric(precision=20, scale=2), nullable=False, server_default="0")
    nps_value: Mapped[Decimal] = mapped_column(Numeric(precision=20, scale=2), nullable=False, server_default="0")
    total_accounts: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")

    snapshot_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_portfolio_snapshots_user_snapshot_at", "user_id", "snapshot_at"),
    )
