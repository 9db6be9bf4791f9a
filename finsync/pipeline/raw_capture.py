"""
RawCaptureStage (Layer A) - audit trail of upstream calls

Best-effort: a storage failure is logged and reported, never raised, and never
blocks the rest of the pipeline.
"""
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from finsync.infrastructure.audit.repository import AuditCallRepository
from finsync.infrastructure.upstream.client import UpstreamResponse
from finsync.pipeline.base import BaseStage, StageOutcome


class RawCaptureStage(BaseStage):
    """Append-only capture of upstream calls"""

    def __init__(self, db: Session):
        super().__init__(db, stage_name="raw_capture")
        self.repo = AuditCallRepository(db)

    def record(
        self,
        user_id: Optional[int],
        endpoint: str,
        method: str,
        request_payload: Optional[dict],
        response_payload: Any,
        http_status: Optional[int],
        latency_ms: Optional[int],
        error_message: Optional[str] = None,
    ) -> StageOutcome:
        """
        Append one AuditCall and commit it

        Returns:
            StageOutcome with data={"auditId": ...} on success; failed outcome on storage error
        """
        try:
            call = self.repo.append_call(
                user_id=user_id,
                endpoint=endpoint,
                method=method,
                request_payload=request_payload,
                response_payload=response_payload,
                http_status=http_status,
                latency_ms=latency_ms,
                error_message=error_message,
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            return self._persistence_failure(exc)

        return StageOutcome.success(auditId=call.id, endpoint=endpoint, httpStatus=http_status)

    def record_response(self, user_id: Optional[int], response: UpstreamResponse) -> StageOutcome:
        """record() for a completed UpstreamResponse"""
        return self.record(
            user_id=user_id,
            endpoint=response.endpoint,
            method=response.method,
            request_payload=response.request_payload,
            response_payload=response.data,
            http_status=response.status,
            latency_ms=response.latency_ms,
        )
