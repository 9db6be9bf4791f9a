"""
User use cases - create-or-update on first sync, cleanup of everything a user owns
"""
import logging

from sqlalchemy.orm import Session

from finsync.infrastructure.db.models import (
    Account,
    AuditCall,
    DepositSummary,
    Insight,
    InvestmentSummary,
    PortfolioSnapshot,
    RecurringDepositSummary,
    TermDepositSummary,
    User,
)

logger = logging.getLogger(__name__)

SUMMARY_MODELS = (DepositSummary, TermDepositSummary, RecurringDepositSummary, InvestmentSummary)


class UserValidationError(ValueError):
    """Invalid user identity"""
    pass


class CreateOrUpdateUserUseCase:
    """
    Use case: upsert a user on external_identity

    Fields passed as None keep their stored value.
    """

    def __init__(self, db: Session):
        self.db = db

    def execute(
        self,
        identity: str,
        phone: str | None = None,
        email: str | None = None,
        subscription_status: str | None = None,
    ) -> User:
        identity = (identity or "").strip()
        if not identity:
            raise UserValidationError("Identity must not be empty")

        user = self.db.query(User).filter(User.external_identity == identity).first()

        if user is None:
            user = User(
                external_identity=identity,
                # The aggregator identity is the mobile number by default
                phone=phone or identity,
                email=email,
                subscription_status=subscription_status or "ACTIVE",
            )
            self.db.add(user)
            logger.info("Created user for identity %s", identity)
        else:
            if phone is not None:
                user.phone = phone
            if email is not None:
                user.email = email
            if subscription_status is not None:
                user.subscription_status = subscription_status

        self.db.commit()
        self.db.refresh(user)
        return user


class CleanupUserUseCase:
    """
    Use case: delete every row owned by an identity

    Shared providers are left in place. Unknown identity is not an error.
    """

    def __init__(self, db: Session):
        self.db = db

    def execute(self, identity: str) -> dict:
        """
        Returns:
            {"identity", "deleted": bool, "rows": {table: count}}
        """
        user = self.db.query(User).filter(User.external_identity == identity).first()
        if user is None:
            return {"identity": identity, "deleted": False, "rows": {}}

        rows: dict[str, int] = {}
        account_ids = [
            account_id for (account_id,) in
            self.db.query(Account.id).filter(Account.user_id == user.id).all()
        ]

        for model in SUMMARY_MODELS:
            rows[model.__tablename__] = (
                self.db.query(model)
                .filter(model.account_id.in_(account_ids))
                .delete(synchronize_session=False)
            )

        for model in (Insight, PortfolioSnapshot, AuditCall, Account):
            rows[model.__tablename__] = (
                self.db.query(model)
                .filter(model.user_id == user.id)
                .delete(synchronize_session=False)
            )

        self.db.delete(user)
        rows[User.__tablename__] = 1
        self.db.commit()

        logger.info("Cleaned up identity %s: %s", identity, rows)
        return {"identity": identity, "deleted": True, "rows": rows}
