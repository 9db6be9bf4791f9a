"""
Balance insights - period statistics from statement-style payloads

One Insight row per period that has at least one dated balance. Append-only.
"""
import calendar
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from finsync.domain.payloads import TransactionEntry
from finsync.infrastructure.db.models import Account, Insight
from finsync.pipeline.base import BaseStage, StageOutcome
from finsync.utils.dates import parse_timestamp, utcnow
from finsync.utils.money import ZERO, MoneyRangeError, percent_change, to_money

logger = logging.getLogger(__name__)

FREQUENCY_WEEKLY = "WEEKLY"
FREQUENCY_MONTHLY = "MONTHLY"
FREQUENCY_YEARLY = "YEARLY"
FREQUENCIES = (FREQUENCY_WEEKLY, FREQUENCY_MONTHLY, FREQUENCY_YEARLY)


@dataclass
class BalanceStats:
    """Statistics for one period"""
    period_from: date
    period_to: date
    frequency: str
    avg_balance: Decimal
    min_balance: Decimal
    max_balance: Decimal
    start_balance: Decimal
    end_balance: Decimal
    change: Decimal
    percent_change: Decimal


def period_bounds(day: date, frequency: str) -> tuple[date, date]:
    """
    Calendar period containing day

    Example:
        >>> period_bounds(date(2025, 2, 10), "MONTHLY")
        (date(2025, 2, 1), date(2025, 2, 28))
        >>> period_bounds(date(2025, 2, 12), "WEEKLY")   # weeks start on Monday
        (date(2025, 2, 10), date(2025, 2, 16))
    """
    if frequency == FREQUENCY_WEEKLY:
        start = day - timedelta(days=day.weekday())
        return start, start + timedelta(days=6)
    if frequency == FREQUENCY_MONTHLY:
        last_day = calendar.monthrange(day.year, day.month)[1]
        return day.replace(day=1), day.replace(day=last_day)
    if frequency == FREQUENCY_YEARLY:
        return date(day.year, 1, 1), date(day.year, 12, 31)
    raise ValueError(f"Unsupported frequency: {frequency}. Use WEEKLY, MONTHLY or YEARLY")


def compute_balance_insights(
    transactions: list[TransactionEntry],
    period_from: date,
    period_to: date,
    frequency: str = FREQUENCY_MONTHLY,
) -> list[BalanceStats]:
    """
    Group dated balances into periods clipped to [period_from, period_to]

    Args:
        transactions: Statement lines (lines without timestamp or balance are ignored)
        period_from: First day of the requested range
        period_to: Last day of the requested range (inclusive)
        frequency: WEEKLY / MONTHLY / YEARLY

    Returns:
        Stats per non-empty period, in chronological order.
        percent_change is 0 when the period starts at a zero balance.
    """
    frequency = frequency.upper()
    if frequency not in FREQUENCIES:
        raise ValueError(f"Unsupported frequency: {frequency}. Use WEEKLY, MONTHLY or YEARLY")
    if period_from > period_to:
        raise ValueError("period_from must not be after period_to")

    dated = []
    for txn in transactions:
        timestamp = parse_timestamp(txn.transaction_timestamp)
        if timestamp is None or txn.current_balance is None:
            continue
        if not period_from <= timestamp.date() <= period_to:
            continue
        dated.append((timestamp, txn.current_balance))
    dated.sort(key=lambda item: item[0])

    buckets: dict[tuple[date, date], list[Decimal]] = {}
    for timestamp, balance in dated:
        bucket = period_bounds(timestamp.date(), frequency)
        buckets.setdefault(bucket, []).append(balance)

    results = []
    for (start, end), balances in sorted(buckets.items()):
        start_balance = balances[0]
        end_balance = balances[-1]
        results.append(BalanceStats(
            period_from=max(start, period_from),
            period_to=min(end, period_to),
            frequency=frequency,
            avg_balance=to_money(sum(balances, ZERO) / len(balances)),
            min_balance=to_money(min(balances)),
            max_balance=to_money(max(balances)),
            start_balance=to_money(start_balance),
            end_balance=to_money(end_balance),
            change=to_money(end_balance - start_balance),
            percent_change=percent_change(start_balance, end_balance),
        ))
    return results


class InsightStage(BaseStage):
    """Appends Insight rows computed from a statement payload"""

    def __init__(self, db: Session):
        super().__init__(db, stage_name="insights")

    def _resolve_account_id(self, user_id: int, transactions: list[TransactionEntry]) -> int | None:
        refs = {txn.account_ref_number for txn in transactions if txn.account_ref_number}
        if len(refs) != 1:
            return None
        account = self.db.query(Account).filter(
            Account.user_id == user_id,
            Account.account_ref_number == refs.pop(),
        ).first()
        return account.id if account else None

    def run(
        self,
        user_id: int,
        transactions: list[TransactionEntry],
        period_from: date,
        period_to: date,
        frequency: str = FREQUENCY_MONTHLY,
    ) -> StageOutcome:
        """
        Compute and append insights for one statement

        Returns:
            StageOutcome with data {insights, periods}; records = appended Insight rows
        """
        try:
            stats = compute_balance_insights(transactions, period_from, period_to, frequency)
        except MoneyRangeError as exc:
            logger.warning("Insights for user %d not computed: %s", user_id, exc)
            return StageOutcome.failure(f"{exc.__class__.__name__}: {exc}", insights=0)
        computed_at = utcnow()
        rows = []

        try:
            account_id = self._resolve_account_id(user_id, transactions)
            for item in stats:
                row = Insight(
                    user_id=user_id,
                    account_id=account_id,
                    period_from=item.period_from,
                    period_to=item.period_to,
                    frequency=item.frequency,
                    avg_balance=item.avg_balance,
                    min_balance=item.min_balance,
                    max_balance=item.max_balance,
                    start_balance=item.start_balance,
                    end_balance=item.end_balance,
                    change=item.change,
                    percent_change=item.percent_change,
                    computed_at=computed_at,
                )
                self.db.add(row)
                rows.append(row)
            self.db.commit()
        except SQLAlchemyError as exc:
            return self._persistence_failure(exc, insights=0)

        logger.info("Appended %d %s insight(s) for user %d", len(rows), frequency, user_id)
        outcome = StageOutcome.success(
            insights=len(rows),
            periods=[
                {
                    "from": item.period_from.isoformat(),
                    "to": item.period_to.isoformat(),
                    "avgBalance": str(item.avg_balance),
                    "change": str(item.change),
                    "percentChange": str(item.percent_change),
                }
                for item in stats
            ],
        )
        outcome.records = rows
        return outcome
