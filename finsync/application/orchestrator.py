"""
PipelineOrchestrator - one sync cycle for one identity

CreateOrUpdateUser -> CallUpstream -> RecordAudit -> UpsertCanonical
    -> ComputeSummaries -> AppendSnapshot -> Verify

Steps run strictly in order. A failure of CreateOrUpdateUser or CallUpstream stops the
run; persistence failures later on are reported and the run goes on, so Verify always
shows what actually reached the store.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from finsync.application.users import CreateOrUpdateUserUseCase, UserValidationError
from finsync.domain.account import validate_fi_type
from finsync.domain.payloads import PAYLOAD_KIND_HOLDINGS, HoldingsPayload
from finsync.infrastructure.db.models import Account, AuditCall, PortfolioSnapshot
from finsync.infrastructure.upstream.client import AuthenticatedProxy
from finsync.infrastructure.upstream.errors import UpstreamClientError
from finsync.pipeline.base import STATUS_FAIL, STATUS_PASS, StageOutcome, StepResult
from finsync.pipeline.canonical_upsert import CanonicalUpsertStage, expected_account_ids
from finsync.pipeline.derived_summary import SUMMARY_VALUE_COLUMNS, DerivedSummaryStage
from finsync.pipeline.raw_capture import RawCaptureStage
from finsync.utils.money import MoneyRangeError

logger = logging.getLogger(__name__)

STEP_CREATE_USER = "CreateOrUpdateUser"
STEP_CALL_UPSTREAM = "CallUpstream"
STEP_RECORD_AUDIT = "RecordAudit"
STEP_UPSERT_CANONICAL = "UpsertCanonical"
STEP_COMPUTE_SUMMARIES = "ComputeSummaries"
STEP_APPEND_SNAPSHOT = "AppendSnapshot"
STEP_VERIFY = "Verify"

REPORT_ALL_PASS = "ALL_PASS"
REPORT_PARTIAL = "PARTIAL"


@dataclass
class SyncTarget:
    """What one run fetches and for whom"""
    identity: str
    endpoint: str
    fi_type: str
    body: dict | None = None

    def __post_init__(self):
        self.fi_type = validate_fi_type(self.fi_type)

    def request_body(self) -> dict:
        body = {"uniqueIdentifier": self.identity}
        body.update(self.body or {})
        return body


@dataclass
class SyncReport:
    """Ordered record of every attempted step"""
    identity: str
    steps: list[StepResult] = field(default_factory=list)
    total_time_ms: int = 0

    @property
    def passed(self) -> int:
        return sum(1 for step in self.steps if step.passed)

    @property
    def status(self) -> str:
        return REPORT_ALL_PASS if self.steps and self.passed == len(self.steps) else REPORT_PARTIAL

    def step(self, name: str) -> StepResult | None:
        return next((step for step in self.steps if step.name == name), None)

    def to_dict(self) -> dict:
        return {
            "identity": self.identity,
            "totalTimeMs": self.total_time_ms,
            "summary": {
                "passed": self.passed,
                "total": len(self.steps),
                "status": self.status,
            },
            "steps": [step.to_dict() for step in self.steps],
        }


class PipelineOrchestrator:
    """
    Runs the three storage layers for one identity and reports per step

    Usage:
        >>> orchestrator = PipelineOrchestrator(db, get_upstream_proxy())
        >>> report = orchestrator.run(SyncTarget("8956545791", endpoint, "DEPOSIT"))
        >>> report.to_dict()["summary"]
        {'passed': 7, 'total': 7, 'status': 'ALL_PASS'}
    """

    def __init__(self, db: Session, proxy: AuthenticatedProxy):
        self.db = db
        self.proxy = proxy

    def run(self, target: SyncTarget) -> SyncReport:
        started = time.monotonic()
        report = SyncReport(identity=target.identity)

        user = self._run_step(report, STEP_CREATE_USER, lambda: self._create_user(target))
        if not user.ok:
            return self._finish(report, started)
        user_id = user.data["userId"]

        call = self._run_step(report, STEP_CALL_UPSTREAM, lambda: self._call_upstream(target))
        if not call.ok:
            return self._finish(report, started)
        response = call.records[0]
        payload: HoldingsPayload = response.payload

        audit = self._run_step(
            report, STEP_RECORD_AUDIT,
            lambda: RawCaptureStage(self.db).record_response(user_id, response),
        )
        canonical = self._run_step(
            report, STEP_UPSERT_CANONICAL,
            lambda: CanonicalUpsertStage(self.db).run(user_id, payload, target.fi_type),
        )

        summary_stage = DerivedSummaryStage(self.db)
        self._run_step(
            report, STEP_COMPUTE_SUMMARIES,
            lambda: self._write_summaries(summary_stage, canonical),
        )
        snapshot = self._run_step(
            report, STEP_APPEND_SNAPSHOT,
            lambda: summary_stage.append_snapshot(user_id),
        )

        self._run_step(
            report, STEP_VERIFY,
            lambda: self._verify(
                user_id,
                payload,
                audit_id=audit.data.get("auditId"),
                snapshot_id=snapshot.data.get("snapshotId"),
            ),
        )
        return self._finish(report, started)

    def _run_step(self, report: SyncReport, name: str, func: Callable[[], StageOutcome]) -> StageOutcome:
        started = time.monotonic()
        try:
            outcome = func()
        except (ArithmeticError, MoneyRangeError) as exc:
            # decimal overflow on an upstream amount fails the step, not the run
            self.db.rollback()
            logger.exception("Sync step %s: amount out of range", name)
            outcome = StageOutcome.failure(f"{exc.__class__.__name__}: {exc}")
        report.steps.append(StepResult(
            name=name,
            status=STATUS_PASS if outcome.ok else STATUS_FAIL,
            duration_ms=int((time.monotonic() - started) * 1000),
            data=outcome.data or None,
            error=outcome.error,
        ))
        if not outcome.ok:
            logger.warning("Sync step %s failed: %s", name, outcome.error)
        return outcome

    def _finish(self, report: SyncReport, started: float) -> SyncReport:
        report.total_time_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Sync for %s finished: %d/%d steps passed",
            report.identity, report.passed, len(report.steps),
        )
        return report

    def _create_user(self, target: SyncTarget) -> StageOutcome:
        try:
            user = CreateOrUpdateUserUseCase(self.db).execute(target.identity)
        except UserValidationError as exc:
            return StageOutcome.failure(f"ValidationError: {exc}")
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Could not create user %s", target.identity)
            return StageOutcome.failure(f"PersistenceError: {exc.__class__.__name__}: {exc}")
        return StageOutcome.success(userId=user.id, identity=user.external_identity)

    def _call_upstream(self, target: SyncTarget) -> StageOutcome:
        try:
            response = self.proxy.fetch(target.endpoint, target.request_body(), PAYLOAD_KIND_HOLDINGS)
        except UpstreamClientError as exc:
            return StageOutcome.failure(f"{exc.__class__.__name__}: {exc}", endpoint=target.endpoint)

        outcome = StageOutcome.success(
            endpoint=response.endpoint,
            httpStatus=response.status,
            latencyMs=response.latency_ms,
            providers=len(response.payload.providers),
            accounts=response.payload.account_count,
        )
        outcome.records = [response]
        return outcome

    def _write_summaries(self, stage: DerivedSummaryStage, canonical: StageOutcome) -> StageOutcome:
        if not canonical.ok:
            return StageOutcome.failure("No accounts to summarise: canonical upsert failed", summaries=0)
        return stage.write_summaries(canonical.records)

    def _verify(
        self,
        user_id: int,
        payload: HoldingsPayload,
        audit_id: int | None,
        snapshot_id: int | None,
    ) -> StageOutcome:
        """Expected (from the payload) vs actual (re-read from the store) counts"""
        external_ids = expected_account_ids(payload)

        try:
            account_ids = [
                account_id for (account_id,) in
                self.db.query(Account.id).filter(
                    Account.user_id == user_id,
                    Account.external_account_id.in_(sorted(external_ids)),
                ).all()
            ]
            summaries = sum(
                self.db.query(model).filter(model.account_id.in_(account_ids)).count()
                for model, _ in SUMMARY_VALUE_COLUMNS
            )
            snapshots = 0
            if snapshot_id is not None:
                snapshots = self.db.query(PortfolioSnapshot).filter(
                    PortfolioSnapshot.id == snapshot_id,
                    PortfolioSnapshot.user_id == user_id,
                ).count()
            audits = 0
            if audit_id is not None:
                audits = self.db.query(AuditCall).filter(AuditCall.id == audit_id).count()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Verify could not read the store for user %d", user_id)
            return StageOutcome.failure(f"PersistenceError: {exc.__class__.__name__}: {exc}")

        checks = {
            "accounts": {"expected": len(external_ids), "actual": len(account_ids)},
            "summaries": {"expected": len(external_ids), "actual": summaries},
            "snapshot": {"expected": 1, "actual": snapshots},
            "audit": {"expected": 1, "actual": audits},
        }
        mismatches = [
            f"{name}: expected {counts['expected']}, found {counts['actual']}"
            for name, counts in checks.items()
            if counts["expected"] != counts["actual"]
        ]
        if mismatches:
            return StageOutcome.failure("Count mismatch - " + "; ".join(mismatches), **checks)
        return StageOutcome.success(**checks)
