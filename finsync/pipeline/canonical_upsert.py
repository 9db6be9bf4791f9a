"""
CanonicalUpsertStage (Layer B) - providers and accounts keyed by stable upstream ids

Upsert semantics: insert when the key is new, otherwise overwrite every mutable field.
Re-running the same payload changes nothing but refreshed values.
"""
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from finsync.domain.account import validate_fi_type
from finsync.domain.payloads import AccountEntry, HoldingsPayload, ProviderEntry
from finsync.infrastructure.db.models import Account, Provider
from finsync.pipeline.base import BaseStage, StageOutcome

logger = logging.getLogger(__name__)


def expected_account_ids(payload: HoldingsPayload) -> set[str]:
    """Distinct external account ids the payload should leave in the ledger"""
    return {
        entry.external_account_id
        for provider in payload.providers
        if provider.provider_id
        for entry in provider.accounts
        if entry.external_account_id
    }


class CanonicalUpsertStage(BaseStage):
    """
    Normalizes holdings payloads into the providers / accounts ledger

    Handles:
    - provider: upsert on provider_id (name refreshed)
    - account: upsert on external_account_id (all mutable fields overwritten)
    - account without external id: skipped and counted, not an error
    """

    def __init__(self, db: Session):
        super().__init__(db, stage_name="canonical_upsert")

    def run(self, user_id: int, payload: HoldingsPayload, fi_type: str) -> StageOutcome:
        """
        Upsert every provider and account in the payload

        Args:
            user_id: Owner of the accounts
            payload: Validated holdings payload
            fi_type: FI type of the endpoint the payload came from

        Returns:
            StageOutcome with data {providers, accounts, skipped};
            outcome.records holds (Account, AccountEntry) pairs for the summary stage
        """
        fi_type = validate_fi_type(fi_type)
        upserted: dict[str, tuple[Account, AccountEntry]] = {}
        providers = 0
        skipped = 0

        try:
            for provider_entry in payload.providers:
                if not provider_entry.provider_id:
                    logger.warning(
                        "Provider without id dropped with %d account(s)", len(provider_entry.accounts)
                    )
                    skipped += len(provider_entry.accounts)
                    continue

                self._upsert_provider(provider_entry)
                providers += 1

                for entry in provider_entry.accounts:
                    if not entry.external_account_id:
                        skipped += 1
                        continue
                    account = self._upsert_account(user_id, provider_entry, entry, fi_type)
                    # Повтор ключа в одном payload: последняя запись побеждает
                    upserted[entry.external_account_id] = (account, entry)

            self.db.commit()
        except SQLAlchemyError as exc:
            return self._persistence_failure(exc, providers=0, accounts=0, skipped=skipped)

        if skipped:
            logger.info("Canonical upsert skipped %d account(s) without external id", skipped)

        outcome = StageOutcome.success(providers=providers, accounts=len(upserted), skipped=skipped)
        outcome.records = list(upserted.values())
        return outcome

    def _upsert_provider(self, entry: ProviderEntry) -> Provider:
        self.db.flush()

        provider = self.db.query(Provider).filter(
            Provider.provider_id == entry.provider_id
        ).first()

        if provider is None:
            provider = Provider(provider_id=entry.provider_id, provider_name=entry.provider_name)
            self.db.add(provider)
        else:
            provider.provider_name = entry.provider_name

        self.db.flush()
        return provider

    def _upsert_account(
        self,
        user_id: int,
        provider: ProviderEntry,
        entry: AccountEntry,
        fi_type: str,
    ) -> Account:
        # Flush чтобы увидеть объекты, добавленные в этой же транзакции
        self.db.flush()

        values = {
            "user_id": user_id,
            "account_ref_number": entry.account_ref_number,
            "masked_number": entry.masked_number,
            "account_type": entry.account_type,
            "fi_type": fi_type,
            "provider_id": provider.provider_id,
            "data_fetched": bool(entry.data_fetched),
            "last_fetch_time": entry.last_fetch_time,
            "is_active": True,
        }

        account = self.db.query(Account).filter(
            Account.external_account_id == entry.external_account_id
        ).first()

        if account is None:
            account = Account(external_account_id=entry.external_account_id, **values)
            self.db.add(account)
        else:
            for field_name, value in values.items():
                setattr(account, field_name, value)

        self.db.flush()
        return account
