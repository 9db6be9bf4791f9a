"""
Tests for CanonicalUpsertStage (Layer B)
"""
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from conftest import deposit_holdings
from finsync.application.users import CreateOrUpdateUserUseCase
from finsync.domain.account import UnknownFiTypeError
from finsync.domain.payloads import parse_payload
from finsync.infrastructure.db.models import Account, Provider
from finsync.pipeline.canonical_upsert import CanonicalUpsertStage, expected_account_ids


@pytest.fixture
def user_id(db_session):
    return CreateOrUpdateUserUseCase(db_session).execute("8956545791").id


def test_upserts_providers_and_accounts(db_session, user_id):
    payload = parse_payload("holdings", deposit_holdings())

    outcome = CanonicalUpsertStage(db_session).run(user_id, payload, "DEPOSIT")

    assert outcome.ok
    assert outcome.data == {"providers": 1, "accounts": 2, "skipped": 0}
    assert len(outcome.records) == 2

    provider = db_session.query(Provider).one()
    assert provider.provider_id == "HDFC-FIP"
    assert provider.provider_name == "HDFC Bank"

    account = db_session.query(Account).filter(Account.external_account_id == "fi-dep-001").one()
    assert account.user_id == user_id
    assert account.fi_type == "DEPOSIT"
    assert account.provider_id == "HDFC-FIP"
    assert account.masked_number == "XXXXXX1001"
    assert account.account_type == "SAVINGS"
    assert account.data_fetched is True
    assert account.is_active is True


def test_rerun_is_idempotent(db_session, user_id):
    stage = CanonicalUpsertStage(db_session)
    stage.run(user_id, parse_payload("holdings", deposit_holdings()), "DEPOSIT")

    refreshed = deposit_holdings()
    refreshed["fipData"][0]["fipName"] = "HDFC Bank Ltd"
    refreshed["fipData"][0]["linkedAccounts"][0]["maskedAccNumber"] = "XXXXXX9999"
    outcome = stage.run(user_id, parse_payload("holdings", refreshed), "DEPOSIT")

    assert outcome.data["accounts"] == 2
    assert db_session.query(Account).count() == 2
    assert db_session.query(Provider).count() == 1
    assert db_session.query(Provider).one().provider_name == "HDFC Bank Ltd"
    account = db_session.query(Account).filter(Account.external_account_id == "fi-dep-001").one()
    assert account.masked_number == "XXXXXX9999"


def test_repeated_key_in_one_payload_keeps_last_entry(db_session, user_id):
    body = deposit_holdings(balances=("100",))
    duplicate = dict(body["fipData"][0]["linkedAccounts"][0], maskedAccNumber="XXXXXX7777")
    body["fipData"][0]["linkedAccounts"].append(duplicate)

    outcome = CanonicalUpsertStage(db_session).run(user_id, parse_payload("holdings", body), "DEPOSIT")

    assert outcome.data["accounts"] == 1
    assert db_session.query(Account).count() == 1
    assert db_session.query(Account).one().masked_number == "XXXXXX7777"
    account, entry = outcome.records[0]
    assert entry.masked_number == "XXXXXX7777"


def test_accounts_without_external_id_are_skipped(db_session, user_id):
    body = deposit_holdings()
    body["fipData"][0]["linkedAccounts"][1]["fiDataId"] = ""
    body["fipData"].append({"fipId": "", "linkedAccounts": [{"fiDataId": "orphan"}]})
    payload = parse_payload("holdings", body)

    outcome = CanonicalUpsertStage(db_session).run(user_id, payload, "DEPOSIT")

    assert outcome.ok
    assert outcome.data == {"providers": 1, "accounts": 1, "skipped": 2}
    assert expected_account_ids(payload) == {"fi-dep-001"}
    assert db_session.query(Account).count() == 1


def test_unknown_fi_type_is_rejected(db_session, user_id):
    with pytest.raises(UnknownFiTypeError):
        CanonicalUpsertStage(db_session).run(user_id, parse_payload("holdings", deposit_holdings()), "GOLD")


def test_persistence_failure_is_reported(db_session, user_id):
    error = OperationalError("INSERT INTO accounts", {}, Exception("connection lost"))

    with patch.object(db_session, "commit", side_effect=error):
        outcome = CanonicalUpsertStage(db_session).run(
            user_id, parse_payload("holdings", deposit_holdings()), "DEPOSIT"
        )

    assert not outcome.ok
    assert outcome.error.startswith("PersistenceError")
    assert outcome.data["accounts"] == 0
    assert outcome.records == []
    assert db_session.query(Account).count() == 0
