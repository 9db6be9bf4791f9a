"""
Store status - row counts per table, grouped by storage layer
"""
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from finsync.infrastructure.audit.repository import AuditCallRepository
from finsync.infrastructure.db.models import (
    Account,
    AuditCall,
    DepositSummary,
    Insight,
    InvestmentSummary,
    PortfolioSnapshot,
    Provider,
    RecurringDepositSummary,
    TermDepositSummary,
    User,
)
from finsync.utils.dates import as_utc

logger = logging.getLogger(__name__)

# (model, layer) in report order
LAYERED_TABLES = (
    (User, "A"),
    (AuditCall, "A"),
    (Provider, "B"),
    (Account, "B"),
    (DepositSummary, "C"),
    (TermDepositSummary, "C"),
    (RecurringDepositSummary, "C"),
    (InvestmentSummary, "C"),
    (Insight, "C"),
    (PortfolioSnapshot, "C"),
)

RECENT_CALLS_LIMIT = 5


class StoreStatusQuery:
    """
    Query: how populated is each layer?

    A table that cannot be read (not provisioned, permissions) is reported as ERROR
    instead of failing the whole report. The newest audited upstream calls are listed
    under recentCalls (None when audit_calls cannot be read).
    """

    def __init__(self, db: Session):
        self.db = db

    def execute(self) -> dict:
        tables = []
        populated = empty = errors = 0

        for model, layer in LAYERED_TABLES:
            name = model.__tablename__
            try:
                rows = self.db.query(model).count()
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.exception("Could not count rows in %s", name)
                tables.append({"table": name, "layer": layer, "status": "ERROR", "rows": None, "error": str(exc)})
                errors += 1
                continue

            if rows > 0:
                populated += 1
            else:
                empty += 1
            tables.append({"table": name, "layer": layer, "status": "OK" if rows > 0 else "EMPTY", "rows": rows})

        return {
            "summary": {
                "populated": populated,
                "empty": empty,
                "errors": errors,
                "total": len(LAYERED_TABLES),
            },
            "tables": tables,
            "recentCalls": self._recent_calls(),
        }

    def _recent_calls(self) -> list[dict] | None:
        try:
            calls = AuditCallRepository(self.db).list_calls(limit=RECENT_CALLS_LIMIT)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Could not read recent audit calls")
            return None

        return [
            {
                "endpoint": call.endpoint,
                "httpStatus": call.http_status,
                "calledAt": as_utc(call.called_at).isoformat(),
            }
            for call in calls
        ]
