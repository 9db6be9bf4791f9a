"""
Tests for upstream payload schemas
"""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from finsync.domain.account import UnknownFiTypeError, validate_fi_type
from finsync.domain.payloads import HoldingsPayload, StatementPayload, parse_payload


def test_holdings_accepts_fip_style_keys():
    payload = parse_payload("holdings", {
        "totalFiData": 1,
        "fipData": [{
            "fipId": "HDFC-FIP",
            "fipName": "HDFC Bank",
            "linkedAccounts": [{
                "fiDataId": "fi-1",
                "linkRefNumber": "ref-1",
                "maskedAccNumber": "XXXX1234",
                "accType": "SAVINGS",
                "lastFetchDateTime": "2025-01-10T10:00:00Z",
                "Summary": {"currentBalance": "1,250.75"},
            }],
        }],
    })

    assert isinstance(payload, HoldingsPayload)
    assert payload.total_fi_data == 1
    entry = payload.providers[0].accounts[0]
    assert payload.providers[0].provider_name == "HDFC Bank"
    assert entry.external_account_id == "fi-1"
    assert entry.account_ref_number == "ref-1"
    assert entry.masked_number == "XXXX1234"
    assert entry.account_type == "SAVINGS"
    assert entry.last_fetch_time == "2025-01-10T10:00:00Z"
    assert entry.summary_decimal("currentBalance") == Decimal("1250.75")


def test_holdings_accepts_canonical_keys():
    payload = parse_payload("holdings", {
        "providers": [{
            "providerId": "ZERODHA",
            "providerName": "Zerodha",
            "accounts": [{"externalAccountId": "eq-1", "currentValue": 5000, "investedValue": "4000"}],
        }],
    })

    entry = payload.providers[0].accounts[0]
    assert entry.external_account_id == "eq-1"
    assert entry.current_value == Decimal("5000")
    assert entry.invested_value == Decimal("4000")


def test_blank_strings_become_none():
    payload = parse_payload("holdings", {
        "fipData": [{"fipId": "X", "linkedAccounts": [
            {"fiDataId": "  ", "maskedAccNumber": "", "currentBalance": "", "Summary": None}
        ]}],
    })

    entry = payload.providers[0].accounts[0]
    assert entry.external_account_id is None
    assert entry.masked_number is None
    assert entry.current_balance is None
    assert entry.summary == {}


def test_missing_provider_list_is_rejected():
    with pytest.raises(ValidationError):
        parse_payload("holdings", {"totalFiData": 0})


def test_kind_cannot_be_overridden_by_body():
    payload = parse_payload("holdings", {"kind": "statement", "providers": []})

    assert payload.kind == "holdings"
    assert payload.account_count == 0


def test_statement_transactions():
    payload = parse_payload("statement", {
        "transactions": [
            {"txnId": "t1", "type": "CREDIT", "amount": "100", "currentBalance": "1100",
             "transactionTimestamp": "2025-01-05T09:00:00Z", "accountRefNumber": "ref-1"},
            {"txnId": "t2", "txnType": "DEBIT", "amount": 50, "balance": 1050, "valueDate": "2025-01-06"},
        ],
    })

    assert isinstance(payload, StatementPayload)
    first, second = payload.transactions
    assert first.current_balance == Decimal("1100")
    assert second.txn_type == "DEBIT"
    assert second.current_balance == Decimal("1050")
    assert second.transaction_timestamp == "2025-01-06"


def test_unknown_kind():
    with pytest.raises(KeyError):
        parse_payload("consents", {})


def test_validate_fi_type_normalizes():
    assert validate_fi_type(" deposit ") == "DEPOSIT"

    with pytest.raises(UnknownFiTypeError):
        validate_fi_type("CRYPTO")
