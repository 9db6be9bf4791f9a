"""
Tests for the periodic sync-all job
"""
from decimal import Decimal
from unittest.mock import patch

import pytest

from conftest import HOLDINGS_PATH, TEST_IDENTITY, deposit_holdings, make_response

from finsync.application import scheduler as scheduler_module
from finsync.application.orchestrator import PipelineOrchestrator
from finsync.application.scheduler import sync_all_users
from finsync.application.users import CreateOrUpdateUserUseCase
from finsync.config import DEFAULT_SYNC_ALL_TARGETS, Settings
from finsync.domain.account import FI_TYPES, UnknownFiTypeError
from finsync.infrastructure.db.models import InvestmentSummary, PortfolioSnapshot

MF_PATH = "/pfm/api/v2/mutual-fund/user-linked-accounts"
DEPOSITS_ONLY = {"DEPOSIT": HOLDINGS_PATH}

MF_HOLDINGS = {
    "fipData": [{
        "fipId": "CAMS",
        "fipName": "CAMS RTA",
        "linkedAccounts": [{
            "fiDataId": "mf-001",
            "holdings": [
                {"isin": "INF001", "currentValue": "6000", "costValue": "5000"},
                {"isin": "INF002", "currentValue": "4000", "costValue": "3000"},
            ],
        }],
    }],
}


def test_sync_all_runs_every_known_identity(db_session, proxy, upstream):
    for identity in ("8956545791", "9000000001"):
        CreateOrUpdateUserUseCase(db_session).execute(identity)
    other_accounts = {"fipData": [{"fipId": "SBI-FIP", "linkedAccounts": [
        {"fiDataId": "fi-sbi-001", "Summary": {"currentBalance": "500"}},
    ]}]}
    upstream.replace(
        HOLDINGS_PATH,
        make_response(200, deposit_holdings()),
        make_response(200, other_accounts),
    )

    counts = sync_all_users(db_session, proxy, DEPOSITS_ONLY)

    assert counts == {"users": 2, "runs": 2, "allPass": 2, "partial": 0, "failed": 0}
    bodies = [call["json"] for call in upstream.calls_to(HOLDINGS_PATH)]
    assert bodies == [{"uniqueIdentifier": "8956545791"}, {"uniqueIdentifier": "9000000001"}]
    assert db_session.query(PortfolioSnapshot).count() == 2


def test_sync_all_covers_every_family(db_session, proxy, upstream):
    CreateOrUpdateUserUseCase(db_session).execute(TEST_IDENTITY)
    upstream.add(MF_PATH, make_response(200, MF_HOLDINGS))

    counts = sync_all_users(db_session, proxy, {"DEPOSIT": HOLDINGS_PATH, "MUTUAL_FUNDS": MF_PATH})

    assert counts == {"users": 1, "runs": 2, "allPass": 2, "partial": 0, "failed": 0}
    assert upstream.calls_to(MF_PATH)[0]["json"] == {"uniqueIdentifier": TEST_IDENTITY}
    assert db_session.query(InvestmentSummary).one().fi_type == "MUTUAL_FUNDS"

    latest = db_session.query(PortfolioSnapshot).order_by(PortfolioSnapshot.id.desc()).first()
    assert latest.deposits_value == Decimal("13000.00")
    assert latest.mutual_funds_value == Decimal("10000.00")
    assert latest.total_net_worth == Decimal("23000.00")
    assert latest.total_accounts == 3


def test_sync_all_continues_after_upstream_failure(db_session, proxy, upstream):
    for identity in ("8956545791", "9000000001"):
        CreateOrUpdateUserUseCase(db_session).execute(identity)
    upstream.replace(
        HOLDINGS_PATH,
        make_response(503, {"message": "maintenance"}),
        make_response(200, {"fipData": []}),
    )

    counts = sync_all_users(db_session, proxy, DEPOSITS_ONLY)

    assert counts["partial"] == 1
    assert counts["allPass"] == 1


def test_failing_family_does_not_skip_the_others(db_session, proxy, upstream):
    CreateOrUpdateUserUseCase(db_session).execute(TEST_IDENTITY)
    upstream.add(MF_PATH, make_response(500, {"message": "RTA down"}))

    counts = sync_all_users(db_session, proxy, {"MUTUAL_FUNDS": MF_PATH, "DEPOSIT": HOLDINGS_PATH})

    assert counts == {"users": 1, "runs": 2, "allPass": 1, "partial": 1, "failed": 0}
    assert len(upstream.calls_to(HOLDINGS_PATH)) == 1


def test_sync_all_survives_crashing_run(db_session, proxy):
    CreateOrUpdateUserUseCase(db_session).execute("8956545791")

    with patch.object(PipelineOrchestrator, "run", side_effect=RuntimeError("boom")):
        counts = sync_all_users(db_session, proxy, DEPOSITS_ONLY)

    assert counts == {"users": 1, "runs": 1, "allPass": 0, "partial": 0, "failed": 1}


def test_sync_all_rejects_unknown_family(db_session, proxy, upstream):
    CreateOrUpdateUserUseCase(db_session).execute(TEST_IDENTITY)

    with pytest.raises(UnknownFiTypeError):
        sync_all_users(db_session, proxy, {"GOLD": "/pfm/api/v2/gold/user-linked-accounts"})
    assert upstream.calls == []


def test_default_targets_cover_every_fi_type():
    assert set(DEFAULT_SYNC_ALL_TARGETS) == set(FI_TYPES)
    assert Settings().SYNC_ALL_TARGETS == DEFAULT_SYNC_ALL_TARGETS


def test_start_scheduler_registers_sync_job():
    with patch.object(scheduler_module, "scheduler") as mock_scheduler:
        scheduler_module.start_scheduler(interval_minutes=15)

    _, kwargs = mock_scheduler.add_job.call_args
    assert kwargs["minutes"] == 15
    assert kwargs["id"] == "sync_all"
    mock_scheduler.start.assert_called_once()
