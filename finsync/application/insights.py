"""
Insight use cases - statement fetch -> audit -> period statistics
"""
from datetime import date

from sqlalchemy.orm import Session

from finsync.application.users import CreateOrUpdateUserUseCase
from finsync.domain.payloads import PAYLOAD_KIND_STATEMENT
from finsync.infrastructure.upstream.client import AuthenticatedProxy
from finsync.pipeline.insights import FREQUENCIES, InsightStage
from finsync.pipeline.raw_capture import RawCaptureStage


class InsightsValidationError(ValueError):
    """Invalid insight request"""
    pass


class SyncInsightsUseCase:
    """
    Use case: compute balance insights for one identity

    Process:
    1. Upsert the user
    2. Fetch a statement-style endpoint (upstream errors propagate)
    3. Record the call in the audit trail (best-effort)
    4. Append one Insight per non-empty period
    """

    def __init__(self, db: Session, proxy: AuthenticatedProxy):
        self.db = db
        self.proxy = proxy

    def execute(
        self,
        identity: str,
        endpoint: str,
        period_from: date,
        period_to: date,
        frequency: str = "MONTHLY",
        account_id: str | None = None,
    ) -> dict:
        """
        Returns:
            {"identity", "frequency", "status": OK|FAIL, "auditId", "insights", "periods"[, "error"]}

        Raises:
            InsightsValidationError: bad frequency or range (nothing is fetched)
            UpstreamClientError: statement could not be fetched or has the wrong shape
        """
        frequency = frequency.upper()
        if frequency not in FREQUENCIES:
            raise InsightsValidationError(
                f"Unsupported frequency: {frequency}. Use WEEKLY, MONTHLY or YEARLY"
            )
        if period_from > period_to:
            raise InsightsValidationError("'from' must not be after 'to'")

        user = CreateOrUpdateUserUseCase(self.db).execute(identity)

        body = {
            "uniqueIdentifier": identity,
            "dateRangeFrom": period_from.isoformat(),
            "dateRangeTo": period_to.isoformat(),
        }
        if account_id:
            body["accountId"] = account_id
        response = self.proxy.fetch(endpoint, body, PAYLOAD_KIND_STATEMENT)

        audit = RawCaptureStage(self.db).record_response(user.id, response)
        outcome = InsightStage(self.db).run(
            user.id, response.payload.transactions, period_from, period_to, frequency
        )

        result = {
            "identity": identity,
            "frequency": frequency,
            "status": "OK" if outcome.ok else "FAIL",
            "auditId": audit.data.get("auditId"),
            "insights": outcome.data.get("insights", 0),
            "periods": outcome.data.get("periods", []),
        }
        if outcome.error:
            result["error"] = outcome.error
        return result
