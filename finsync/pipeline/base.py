"""
Base types for pipeline stages

Every stage returns an explicit StageOutcome instead of raising on persistence failures;
the orchestrator turns outcomes into StepResults. A stage commits its own writes, so a
later failing stage never undoes an earlier one.
"""
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

STATUS_PASS = "PASS"
STATUS_FAIL = "FAIL"


@dataclass
class StageOutcome:
    """Result of one stage call"""
    ok: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    # Rows handed to the next stage, not part of the report
    records: list[Any] = field(default_factory=list, repr=False)

    @classmethod
    def success(cls, **data) -> "StageOutcome":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: str, **data) -> "StageOutcome":
        return cls(ok=False, data=data, error=error)


@dataclass
class StepResult:
    """One row of the orchestrator report"""
    name: str
    status: str  # PASS / FAIL
    duration_ms: int
    data: dict[str, Any] | None = None
    error: str | None = None

    @property
    def passed(self) -> bool:
        return self.status == STATUS_PASS

    def to_dict(self) -> dict:
        result = {
            "name": self.name,
            "status": self.status,
            "durationMs": self.duration_ms,
            "data": self.data,
        }
        if self.error:
            result["error"] = self.error
        return result


class BaseStage:
    """
    Common plumbing for stages writing through one SQLAlchemy session

    Args:
        db: SQLAlchemy session shared by the whole sync run
        stage_name: Name used in logs
    """

    def __init__(self, db: Session, stage_name: str):
        self.db = db
        self.stage_name = stage_name

    def _persistence_failure(self, exc: SQLAlchemyError, **data) -> StageOutcome:
        """Roll back the stage's pending writes and report them as a failed outcome"""
        self.db.rollback()
        logger.exception("%s: persistence failure", self.stage_name)
        return StageOutcome.failure(f"PersistenceError: {exc.__class__.__name__}: {exc}", **data)
