import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from cashback_engine import FeePolicy, Splits, compute_splits
from errors import DuplicatePaymentError, InvalidEventError, NotFoundError
from models import Transaction, Wallet, STATUS_COMPLETED

logger = logging.getLogger(__name__)

APPLIED = "applied"
ALREADY_PROCESSED = "already_processed"


@dataclass(frozen=True)
class SettlementResult:
    status: str
    payment_id: str
    transaction: Optional[Transaction] = None
    splits: Optional[Splits] = None
    wallet: Optional[Wallet] = None
    referrer_wallet: Optional[Wallet] = None

    @property
    def applied(self) -> bool:
        return self.status == APPLIED

    def to_dict(self):
        return {
            "status": self.status,
            "payment_id": self.payment_id,
            "transaction": self.transaction.to_dict() if self.transaction else None,
            "splits": self.splits.to_dict() if self.splits else None,
        }


class SettlementEngine:
    """
    turns a confirmed payment into ledger + wallet state, at most once per payment id.

    store: MemoryStore or db.store.PostgresStore (anything with atomic())
    policy: FeePolicy with the platform fee / cashback / referral rates
    """

    def __init__(self, store, policy: FeePolicy = FeePolicy()):
        self.store = store
        self.policy = policy

    def settle(self, payment_id: str, amount: Decimal, business_id: str, user_id: str) -> SettlementResult:
        """
        process a single confirmed payment:
          - idempotency check on payment_id
          - resolve purchaser (and their referrer)
          - compute splits
          - credit wallets and append the transaction in one storage transaction

        returns status 'applied' the first time and 'already_processed' for every
        redelivery, including a concurrent one that loses the insert race.
        """
        if not payment_id:
            raise InvalidEventError("payment_id is required")

        # 1) idempotency check
        with self.store.atomic() as unit:
            if unit.exists_by_payment_id(payment_id):
                logger.info("payment %s already settled, skipping", payment_id)
                return SettlementResult(status=ALREADY_PROCESSED, payment_id=payment_id)

            user = unit.get_user(user_id)
            unit.get_business(business_id)

        # 2) splits (pure)
        referrer_id = user.referred_by
        splits = compute_splits(amount, referrer_id is not None, self.policy)

        # 3) ledger + wallets, all or nothing
        try:
            with self.store.atomic() as unit:
                # lock both wallets up front in user id order, so two settlements
                # touching the same pair of wallets cannot deadlock
                locked = {
                    wallet_user: unit.upsert_wallet(wallet_user, business_id)
                    for wallet_user in sorted({user_id, referrer_id} - {None})
                }
                wallet = locked[user_id]

                # commit point: unique payment_id rejects the loser of a race
                tx = unit.insert_transaction(
                    Transaction(
                        payment_id=payment_id,
                        user_id=user_id,
                        business_id=business_id,
                        wallet_id=wallet.id,
                        amount=splits.amount,
                        cashback_earned=splits.cashback,
                        referrer_id=referrer_id,
                        referral_reward=splits.referral_reward,
                        status=STATUS_COMPLETED,
                    )
                )

                referrer_wallet = None
                if referrer_id is not None:
                    referrer_wallet = unit.upsert_wallet(
                        referrer_id,
                        business_id,
                        referral_delta=splits.referral_reward,
                    )

                # recompute instead of increment: heals a wallet that drifted from the ledger
                total = unit.sum_cashback_earned(user_id, business_id)
                wallet = unit.upsert_wallet(user_id, business_id, balance=total)
        except DuplicatePaymentError:
            logger.info("payment %s settled concurrently, rolled back this attempt", payment_id)
            return SettlementResult(status=ALREADY_PROCESSED, payment_id=payment_id)

        logger.info(
            "settled payment %s: amount=%s cashback=%s user=%s business=%s referrer=%s reward=%s",
            payment_id,
            splits.amount,
            splits.cashback,
            user_id,
            business_id,
            referrer_id,
            splits.referral_reward,
        )

        return SettlementResult(
            status=APPLIED,
            payment_id=payment_id,
            transaction=tx,
            splits=splits,
            wallet=wallet,
            referrer_wallet=referrer_wallet,
        )

    def reconcile_wallet(self, user_id: str, business_id: str) -> Wallet:
        """re-derive wallet.balance from the completed transactions for the pair."""
        with self.store.atomic() as unit:
            wallet = unit.get_wallet(user_id, business_id)
            if wallet is None:
                raise NotFoundError(f"No wallet for user {user_id} at business {business_id}")

            total = unit.sum_cashback_earned(user_id, business_id)
            if wallet.balance != total:
                logger.warning(
                    "wallet %s drifted from ledger: stored=%s ledger=%s",
                    wallet.id,
                    wallet.balance,
                    total,
                )
            return unit.upsert_wallet(user_id, business_id, balance=total)

    def sync_business_account(self, account) -> bool:
        """
        account.updated: copy the onboarding flags onto the business that owns
        the connected account. ignored until details have been submitted.
        """
        if not account.details_submitted:
            logger.info("account %s has not submitted details yet", account.id)
            return False

        with self.store.atomic() as unit:
            updated = unit.update_business_account(
                account.id,
                True,
                account.charges_enabled,
                account.payouts_enabled,
            )

        if updated:
            logger.info("updated onboarding status for account %s", account.id)
        else:
            logger.warning("no business linked to stripe account %s", account.id)
        return updated
