"""
Audit call repository - Layer A raw capture

Every upstream call is written as an immutable row. Rows are never updated.
"""
from datetime import datetime
from typing import Optional, Dict, Any, List
from sqlalchemy.orm import Session

from finsync.infrastructure.db.models import AuditCall
from finsync.utils.dates import utcnow


class AuditCallRepository:
    """
    Repository for the audit_calls table
    """

    def __init__(self, db: Session):
        self.db = db

    def append_call(
        self,
        user_id: Optional[int],
        endpoint: str,
        method: str,
        request_payload: Optional[Dict[str, Any]],
        response_payload: Optional[Any],
        http_status: Optional[int],
        latency_ms: Optional[int],
        error_message: Optional[str] = None,
        called_at: Optional[datetime] = None,
    ) -> AuditCall:
        """
        Append one audit row (flush only, the caller commits)

        Args:
            user_id: Internal user id (None for calls not tied to a user)
            endpoint: Upstream path that was called
            method: HTTP method
            request_payload: Body sent upstream (JSONB)
            response_payload: Decoded response body (JSONB)
            http_status: Upstream HTTP status
            latency_ms: Round-trip time
            error_message: Optional failure description
            called_at: When the call happened (default: now)

        Returns:
            The flushed AuditCall (id assigned)

        Example:
            >>> repo = AuditCallRepository(db)
            >>> row = repo.append_call(
            ...     user_id=1,
            ...     endpoint="/pfm/api/v2/deposit/user-linked-accounts",
            ...     method="POST",
            ...     request_payload={"uniqueIdentifier": "8956545791"},
            ...     response_payload={"totalFiData": 2},
            ...     http_status=200,
            ...     latency_ms=340,
            ... )
        """
        if called_at is None:
            called_at = utcnow()

        # JSONB columns hold objects; wrap bare lists/strings
        if response_payload is not None and not isinstance(response_payload, dict):
            response_payload = {"data": response_payload}

        call = AuditCall(
            user_id=user_id,
            endpoint=endpoint,
            method=method,
            request_payload=request_payload,
            response_payload=response_payload,
            http_status=http_status,
            latency_ms=latency_ms,
            error_message=error_message,
            called_at=called_at,
        )

        self.db.add(call)
        self.db.flush()

        return call

    def list_calls(self, user_id: Optional[int] = None, limit: int = 50) -> List[AuditCall]:
        """
        Most recent calls, newest first

        Args:
            user_id: Only calls made for this user (None = all users)
            limit: Maximum number of rows
        """
        query = self.db.query(AuditCall)

        if user_id is not None:
            query = query.filter(AuditCall.user_id == user_id)

        return query.order_by(AuditCall.called_at.desc(), AuditCall.id.desc()).limit(limit).all()
