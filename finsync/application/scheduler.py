"""
Background scheduler - runs the periodic sync-all job inside the FastAPI process.

Jobs:
  - Sync every asset family of all known identities (every SYNC_INTERVAL_MINUTES)
"""
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from finsync.application.orchestrator import REPORT_ALL_PASS, PipelineOrchestrator, SyncTarget
from finsync.domain.account import validate_fi_type
from finsync.infrastructure.db.models import User
from finsync.infrastructure.upstream.client import AuthenticatedProxy

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(daemon=True)


def sync_all_users(db: Session, proxy: AuthenticatedProxy, targets: dict[str, str]) -> dict:
    """
    One orchestrator run per known identity and asset family, oldest user first

    Every run appends a snapshot, so the user's last snapshot covers all families
    synced so far. A failing run is logged and counted; the loop moves on.

    Args:
        targets: FI type -> linked-accounts endpoint, run in the given order

    Returns:
        {"users": N, "runs": N, "allPass": N, "partial": N, "failed": N}

    Raises:
        UnknownFiTypeError: targets name an FI type the pipeline does not handle
    """
    families = [(validate_fi_type(fi_type), endpoint) for fi_type, endpoint in targets.items()]
    identities = [
        identity for (identity,) in
        db.query(User.external_identity).order_by(User.id).all()
    ]
    orchestrator = PipelineOrchestrator(db, proxy)
    counts = {"users": len(identities), "runs": 0, "allPass": 0, "partial": 0, "failed": 0}

    for identity in identities:
        for fi_type, endpoint in families:
            counts["runs"] += 1
            try:
                report = orchestrator.run(SyncTarget(identity=identity, endpoint=endpoint, fi_type=fi_type))
            except Exception:
                db.rollback()
                logger.exception("Sync-all: %s run for %s crashed", fi_type, identity)
                counts["failed"] += 1
                continue

            if report.status == REPORT_ALL_PASS:
                counts["allPass"] += 1
            else:
                counts["partial"] += 1

    logger.info("Sync-all finished: %s", counts)
    return counts


def _run_sync_all():
    from finsync.config import get_settings
    from finsync.infrastructure.db.session import get_session_factory
    from finsync.infrastructure.upstream.client import get_upstream_proxy

    settings = get_settings()
    Session = get_session_factory()
    db = Session()
    try:
        sync_all_users(db, get_upstream_proxy(), settings.SYNC_ALL_TARGETS)
    except Exception:
        logger.exception("Sync-all job failed")
    finally:
        db.close()


def start_scheduler(interval_minutes: int = 60):
    """Start the background scheduler with the sync-all job."""
    scheduler.add_job(
        _run_sync_all,
        "interval",
        minutes=interval_minutes,
        id="sync_all",
        replace_existing=True,
        max_instances=1,
    )

    scheduler.start()
    logger.info("Scheduler started: sync_all (every %d min)", interval_minutes)


def shutdown_scheduler():
    """Gracefully stop the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
