"""
Upstream payload schemas - one tagged variant per endpoint family

The aggregator answers with loosely shaped JSON; different endpoint versions use different
key names for the same thing (fipData vs providers, fiDataId vs externalAccountId, ...).
Payloads are validated here, at the boundary, so the stages only ever see typed entries.

Families:
- holdings:  {totalFiData, providers: [{providerId, providerName, accounts: [...]}]}
- statement: {transactions: [...]}
"""
from decimal import Decimal
from typing import Any, ClassVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from finsync.utils.money import parse_decimal

PAYLOAD_KIND_HOLDINGS = "holdings"
PAYLOAD_KIND_STATEMENT = "statement"


def _blank_to_none(value):
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class _UpstreamModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class AccountEntry(_UpstreamModel):
    """One linked account as reported by a holdings-style endpoint"""

    external_account_id: str | None = Field(
        default=None, validation_alias=AliasChoices("externalAccountId", "fiDataId")
    )
    account_ref_number: str | None = Field(
        default=None, validation_alias=AliasChoices("accountRefNumber", "linkRefNumber")
    )
    masked_number: str | None = Field(
        default=None, validation_alias=AliasChoices("maskedNumber", "maskedAccNumber")
    )
    account_type: str | None = Field(
        default=None, validation_alias=AliasChoices("accountType", "accType")
    )
    data_fetched: bool | None = Field(default=None, validation_alias="dataFetched")
    last_fetch_time: str | None = Field(
        default=None, validation_alias=AliasChoices("lastFetchTime", "lastFetchDateTime")
    )

    # Money
    current_balance: Decimal | None = Field(default=None, validation_alias="currentBalance")
    current_value: Decimal | None = Field(default=None, validation_alias="currentValue")
    available_balance: Decimal | None = Field(default=None, validation_alias="availableBalance")
    invested_value: Decimal | None = Field(
        default=None, validation_alias=AliasChoices("investedValue", "costValue")
    )
    principal_amount: Decimal | None = Field(
        default=None, validation_alias=AliasChoices("principalAmount", "depositAmount")
    )
    maturity_amount: Decimal | None = Field(default=None, validation_alias="maturityAmount")
    recurring_amount: Decimal | None = Field(
        default=None, validation_alias=AliasChoices("recurringAmount", "installmentAmount")
    )
    interest_rate: Decimal | None = Field(default=None, validation_alias="interestRate")
    returns_percentage: Decimal | None = Field(default=None, validation_alias="returnsPercentage")

    maturity_date: str | None = Field(default=None, validation_alias="maturityDate")
    opening_date: str | None = Field(default=None, validation_alias="openingDate")
    tenure_months: int | None = Field(default=None, validation_alias="tenureMonths")
    installments_paid: int | None = Field(default=None, validation_alias="installmentsPaid")

    summary: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("summary", "Summary")
    )
    profile: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("profile", "Profile")
    )
    holdings: list[dict[str, Any]] = Field(default_factory=list, validation_alias="holdings")

    @field_validator(
        "external_account_id", "account_ref_number", "masked_number", "account_type",
        "last_fetch_time", "maturity_date", "opening_date",
        mode="before",
    )
    @classmethod
    def _strings(cls, v):
        return _blank_to_none(v)

    @field_validator(
        "current_balance", "current_value", "available_balance", "invested_value",
        "principal_amount", "maturity_amount", "recurring_amount", "interest_rate",
        "returns_percentage",
        mode="before",
    )
    @classmethod
    def _money(cls, v):
        return parse_decimal(v)

    @field_validator("tenure_months", "installments_paid", mode="before")
    @classmethod
    def _ints(cls, v):
        if v is None or v == "":
            return None
        return v

    @field_validator("summary", "profile", mode="before")
    @classmethod
    def _objects(cls, v):
        return v or {}

    @field_validator("holdings", mode="before")
    @classmethod
    def _lists(cls, v):
        return v or []

    def summary_decimal(self, key: str) -> Decimal | None:
        """Money value from the nested Summary block"""
        return parse_decimal(self.summary.get(key))

    def profile_value(self, *keys: str):
        """First non-empty value among profile keys"""
        for key in keys:
            value = _blank_to_none(self.profile.get(key))
            if value is not None:
                return value
        return None


class ProviderEntry(_UpstreamModel):
    """Financial information provider with its linked accounts"""

    provider_id: str = Field(validation_alias=AliasChoices("providerId", "fipId"))
    provider_name: str = Field(default="", validation_alias=AliasChoices("providerName", "fipName"))
    accounts: list[AccountEntry] = Field(
        default_factory=list, validation_alias=AliasChoices("accounts", "linkedAccounts")
    )

    @field_validator("provider_id", mode="before")
    @classmethod
    def _provider_id(cls, v):
        if v is None:
            return v
        return str(v).strip()

    @field_validator("provider_name", mode="before")
    @classmethod
    def _provider_name(cls, v):
        return "" if v is None else str(v)

    @field_validator("accounts", mode="before")
    @classmethod
    def _accounts(cls, v):
        return v or []


class HoldingsPayload(_UpstreamModel):
    """Holdings-style response (user-linked-accounts endpoints)"""

    kind: ClassVar[str] = PAYLOAD_KIND_HOLDINGS
    total_fi_data: int | None = Field(default=None, validation_alias="totalFiData")
    providers: list[ProviderEntry] = Field(validation_alias=AliasChoices("providers", "fipData"))

    @property
    def account_count(self) -> int:
        return sum(len(p.accounts) for p in self.providers)


class TransactionEntry(_UpstreamModel):
    """One statement line"""

    txn_id: str | None = Field(default=None, validation_alias=AliasChoices("txnId", "transactionId"))
    txn_type: str | None = Field(default=None, validation_alias=AliasChoices("type", "txnType"))
    amount: Decimal | None = Field(default=None, validation_alias="amount")
    current_balance: Decimal | None = Field(
        default=None, validation_alias=AliasChoices("currentBalance", "balance")
    )
    transaction_timestamp: str | None = Field(
        default=None, validation_alias=AliasChoices("transactionTimestamp", "valueDate")
    )
    account_ref_number: str | None = Field(default=None, validation_alias="accountRefNumber")

    @field_validator("amount", "current_balance", mode="before")
    @classmethod
    def _money(cls, v):
        return parse_decimal(v)

    @field_validator("txn_id", "txn_type", "transaction_timestamp", "account_ref_number", mode="before")
    @classmethod
    def _strings(cls, v):
        return _blank_to_none(v)


class StatementPayload(_UpstreamModel):
    """Statement-style response (user-account-statement endpoints)"""

    kind: ClassVar[str] = PAYLOAD_KIND_STATEMENT
    transactions: list[TransactionEntry] = Field(validation_alias="transactions")


PAYLOAD_SCHEMAS: dict[str, type[_UpstreamModel]] = {
    PAYLOAD_KIND_HOLDINGS: HoldingsPayload,
    PAYLOAD_KIND_STATEMENT: StatementPayload,
}


def parse_payload(kind: str, data: Any) -> HoldingsPayload | StatementPayload:
    """
    Validate a decoded upstream body against the schema of its endpoint family

    Bodies wrapped in a {"success": ..., "data": {...}} envelope are unwrapped first.

    Raises:
        KeyError: unknown payload kind
        pydantic.ValidationError: body does not match the schema
    """
    schema = PAYLOAD_SCHEMAS[kind]
    if isinstance(data, dict) and "success" in data and isinstance(data.get("data"), dict):
        data = data["data"]
    return schema.model_validate(data)
