"""
DerivedSummaryStage (Layer C) - per-account summaries and the portfolio snapshot

- summaries: one row per account, overwritten on every refresh (conflict key: account_id)
- snapshot: append-only time series, never rewritten
"""
import logging
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from finsync.domain.account import (
    FI_TYPE_DEPOSIT,
    FI_TYPE_RECURRING_DEPOSIT,
    FI_TYPE_TERM_DEPOSIT,
    INVESTMENT_FI_TYPES,
    SNAPSHOT_FIELD_BY_FI_TYPE,
)
from finsync.domain.payloads import AccountEntry
from finsync.infrastructure.db.models import (
    Account,
    DepositSummary,
    InvestmentSummary,
    PortfolioSnapshot,
    RecurringDepositSummary,
    TermDepositSummary,
)
from finsync.pipeline.base import BaseStage, StageOutcome
from finsync.utils.dates import as_utc, parse_date, utcnow
from finsync.utils.money import ZERO, MoneyRangeError, parse_decimal, percent_change, to_money

logger = logging.getLogger(__name__)

# (summary model, column holding the current value) - every table the snapshot sums over
SUMMARY_VALUE_COLUMNS = (
    (DepositSummary, DepositSummary.current_balance),
    (TermDepositSummary, TermDepositSummary.current_balance),
    (RecurringDepositSummary, RecurringDepositSummary.current_balance),
    (InvestmentSummary, InvestmentSummary.current_value),
)

# returns_percentage is Numeric(10, 2)
MAX_PERCENT = Decimal(10) ** 8


def _first(*values):
    """First value that is not None (0 is a valid balance)"""
    for value in values:
        if value is not None:
            return value
    return None


def _money_or_none(value) -> Decimal | None:
    if value is None:
        return None
    try:
        return to_money(value)
    except MoneyRangeError as exc:
        logger.warning("Summary value dropped: %s", exc)
        return None


def _sum_holdings(entry: AccountEntry, *keys: str) -> Decimal | None:
    if not entry.holdings:
        return None
    total = ZERO
    found = False
    for holding in entry.holdings:
        amount = _first(*(parse_decimal(holding.get(key)) for key in keys))
        if amount is not None:
            total += amount
            found = True
    return total if found else None


def _deposit_values(entry: AccountEntry) -> dict:
    return {
        "current_balance": _money_or_none(_first(entry.summary_decimal("currentBalance"), entry.current_balance)),
        "available_balance": _money_or_none(_first(entry.summary_decimal("availableBalance"), entry.available_balance)),
        "currency": entry.summary.get("currency") or "INR",
        "interest_rate": entry.interest_rate,
        "branch": entry.profile_value("branch"),
        "ifsc_code": entry.profile_value("ifsc", "ifscCode"),
        "opening_date": parse_date(_first(entry.profile_value("openingDate"), entry.opening_date)),
    }


def _term_deposit_values(entry: AccountEntry) -> dict:
    return {
        "principal_amount": _money_or_none(entry.principal_amount),
        "current_balance": _money_or_none(_first(
            entry.current_value,
            entry.current_balance,
            entry.summary_decimal("currentValue"),
            entry.summary_decimal("currentBalance"),
        )),
        "maturity_amount": _money_or_none(entry.maturity_amount),
        "maturity_date": parse_date(entry.maturity_date),
        "interest_rate": entry.interest_rate,
        "tenure_months": entry.tenure_months,
    }


def _recurring_deposit_values(entry: AccountEntry) -> dict:
    return {
        "current_balance": _money_or_none(_first(
            entry.current_value,
            entry.current_balance,
            entry.summary_decimal("currentValue"),
            entry.summary_decimal("currentBalance"),
        )),
        "recurring_amount": _money_or_none(entry.recurring_amount),
        "maturity_amount": _money_or_none(entry.maturity_amount),
        "maturity_date": parse_date(entry.maturity_date),
        "interest_rate": entry.interest_rate,
        "installments_paid": entry.installments_paid,
    }


def _investment_values(entry: AccountEntry, fi_type: str) -> dict:
    current_value = _first(
        entry.current_value,
        entry.summary_decimal("currentValue"),
        _sum_holdings(entry, "currentValue", "marketValue"),
        entry.current_balance,
    )
    invested_value = _first(
        entry.invested_value,
        entry.summary_decimal("investedValue"),
        _sum_holdings(entry, "investedValue", "costValue"),
    )
    returns = entry.returns_percentage
    if returns is None and current_value is not None and invested_value is not None:
        try:
            returns = percent_change(invested_value, current_value)
        except MoneyRangeError as exc:
            logger.warning("Returns not computed: %s", exc)
    if returns is not None and abs(returns) >= MAX_PERCENT:
        logger.warning("Returns percentage dropped: %s", returns)
        returns = None
    return {
        "fi_type": fi_type,
        "current_value": _money_or_none(current_value),
        "invested_value": _money_or_none(invested_value),
        "returns_percentage": _money_or_none(returns),
        "holdings_count": len(entry.holdings),
    }


def summary_for(fi_type: str, entry: AccountEntry) -> tuple[type, dict]:
    """Summary model and column values for an account of the given FI type"""
    if fi_type == FI_TYPE_DEPOSIT:
        return DepositSummary, _deposit_values(entry)
    if fi_type == FI_TYPE_TERM_DEPOSIT:
        return TermDepositSummary, _term_deposit_values(entry)
    if fi_type == FI_TYPE_RECURRING_DEPOSIT:
        return RecurringDepositSummary, _recurring_deposit_values(entry)
    if fi_type in INVESTMENT_FI_TYPES:
        return InvestmentSummary, _investment_values(entry, fi_type)
    raise ValueError(f"No summary table for FI type {fi_type}")


class DerivedSummaryStage(BaseStage):
    """
    Builds Layer C from the accounts upserted in Layer B

    Usage:
        >>> stage = DerivedSummaryStage(db)
        >>> stage.write_summaries(canonical_outcome.records)
        >>> stage.append_snapshot(user_id=1)
    """

    def __init__(self, db: Session):
        super().__init__(db, stage_name="derived_summary")

    def write_summaries(self, upserted: list[tuple[Account, AccountEntry]]) -> StageOutcome:
        """
        Upsert one type-specific summary per account

        Args:
            upserted: (Account, AccountEntry) pairs from CanonicalUpsertStage

        Returns:
            StageOutcome with data {summaries, tables}; records = summarised account ids
        """
        fetched_at = utcnow()
        written: list[int] = []
        tables: dict[str, int] = {}

        try:
            for account, entry in upserted:
                model, values = summary_for(account.fi_type, entry)
                self._upsert_summary(model, account.id, values, fetched_at)
                written.append(account.id)
                tables[model.__tablename__] = tables.get(model.__tablename__, 0) + 1
            self.db.commit()
        except SQLAlchemyError as exc:
            return self._persistence_failure(exc, summaries=0)

        outcome = StageOutcome.success(summaries=len(written), tables=tables)
        outcome.records = written
        return outcome

    def _upsert_summary(self, model, account_id: int, values: dict, fetched_at) -> None:
        self.db.flush()

        # An account that changed FI type keeps only the summary of its current type
        for other_model, _ in SUMMARY_VALUE_COLUMNS:
            if other_model is not model:
                self.db.query(other_model).filter(
                    other_model.account_id == account_id
                ).delete(synchronize_session=False)

        summary = self.db.query(model).filter(model.account_id == account_id).first()

        if summary is None:
            summary = model(account_id=account_id, last_fetch_time=fetched_at, **values)
            self.db.add(summary)
        else:
            for field_name, value in values.items():
                setattr(summary, field_name, value)
            summary.last_fetch_time = fetched_at

        self.db.flush()

    def compute_breakdown(self, user_id: int) -> dict[str, Decimal]:
        """
        Current value per asset class over the user's active accounts (rounded to 2 places)
        """
        breakdown = {field_name: ZERO for field_name in SNAPSHOT_FIELD_BY_FI_TYPE.values()}

        for model, value_column in SUMMARY_VALUE_COLUMNS:
            rows = (
                self.db.query(Account.fi_type, value_column)
                .join(model, model.account_id == Account.id)
                .filter(Account.user_id == user_id, Account.is_active.is_(True))
                .all()
            )
            for fi_type, value in rows:
                field_name = SNAPSHOT_FIELD_BY_FI_TYPE.get(fi_type)
                if field_name is None or value is None:
                    continue
                breakdown[field_name] += Decimal(value)

        return {field_name: to_money(amount) for field_name, amount in breakdown.items()}

    def append_snapshot(self, user_id: int) -> StageOutcome:
        """
        Append a PortfolioSnapshot (never overwrites)

        snapshot_at is strictly later than the user's previous snapshot.

        Returns:
            StageOutcome with data {snapshotId, totalNetWorth, totalAccounts, breakdown}
        """
        try:
            breakdown = self.compute_breakdown(user_id)
            total = to_money(sum(breakdown.values(), ZERO))
            total_accounts = (
                self.db.query(Account)
                .filter(Account.user_id == user_id, Account.is_active.is_(True))
                .count()
            )

            snapshot_at = utcnow()
            latest = self.db.query(func.max(PortfolioSnapshot.snapshot_at)).filter(
                PortfolioSnapshot.user_id == user_id
            ).scalar()
            if latest is not None and as_utc(latest) >= snapshot_at:
                snapshot_at = as_utc(latest) + timedelta(microseconds=1)

            snapshot = PortfolioSnapshot(
                user_id=user_id,
                total_net_worth=total,
                total_accounts=total_accounts,
                snapshot_at=snapshot_at,
                **breakdown,
            )
            self.db.add(snapshot)
            self.db.commit()
        except SQLAlchemyError as exc:
            return self._persistence_failure(exc)
        except MoneyRangeError as exc:
            self.db.rollback()
            logger.warning("Snapshot for user %d not written: %s", user_id, exc)
            return StageOutcome.failure(f"{exc.__class__.__name__}: {exc}")

        logger.info(
            "Snapshot %d for user %d: net worth %s over %d account(s)",
            snapshot.id, user_id, total, total_accounts,
        )
        return StageOutcome.success(
            snapshotId=snapshot.id,
            totalNetWorth=str(total),
            totalAccounts=total_accounts,
            breakdown={field_name: str(amount) for field_name, amount in breakdown.items()},
        )
