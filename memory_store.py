import copy
import threading
import uuid
from contextlib import contextmanager
from decimal import Decimal
from typing import Dict, Optional, Tuple

from errors import BusinessNotFoundError, DuplicatePaymentError, UserNotFoundError
from models import Business, Transaction, User, Wallet, STATUS_COMPLETED


class MemoryStore:
    """
    in-memory variant of the postgres store.

    tables
    ------
    users : dict      user_id -> User
    businesses : dict business_id -> Business
    wallets : dict    (user_id, business_id) -> Wallet   (unique pair)
    transactions : dict  payment_id -> Transaction       (unique payment id)

    atomic() holds a lock for the whole block and restores the wallet and
    transaction tables if the block raises, so a failed settlement leaves
    no partial state behind.
    """

    def __init__(self):
        self.users: Dict[str, User] = {}
        self.businesses: Dict[str, Business] = {}
        self.wallets: Dict[Tuple[str, str], Wallet] = {}
        self.transactions: Dict[str, Transaction] = {}
        self._lock = threading.RLock()

    # ---------
    # seeding helpers (signup / onboarding own these rows in production)
    # ---------

    def add_user(self, user_id: str, referred_by: Optional[str] = None) -> User:
        with self._lock:
            existing = self.users.get(user_id)
            if existing is not None and existing.referred_by not in (None, referred_by):
                raise ValueError(
                    f"User {user_id} already has a referrer ({existing.referred_by})."
                )
            if referred_by == user_id:
                raise ValueError("User cannot refer themselves.")
            user = User(id=user_id, referred_by=referred_by)
            self.users[user_id] = user
            return user

    def add_business(self, business_id: str, stripe_account_id: Optional[str] = None) -> Business:
        with self._lock:
            business = Business(id=business_id, stripe_account_id=stripe_account_id)
            self.businesses[business_id] = business
            return business

    @contextmanager
    def atomic(self):
        with self._lock:
            wallets = copy.deepcopy(self.wallets)
            transactions = copy.deepcopy(self.transactions)
            businesses = copy.deepcopy(self.businesses)
            try:
                yield self
            except Exception:
                self.wallets = wallets
                self.transactions = transactions
                self.businesses = businesses
                raise

    # ---------
    # users / businesses
    # ---------

    def get_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def get_business(self, business_id: str) -> Business:
        business = self.businesses.get(business_id)
        if business is None:
            raise BusinessNotFoundError(business_id)
        return business

    def update_business_account(self, stripe_account_id, details_submitted, charges_enabled, payouts_enabled) -> bool:
        for business in self.businesses.values():
            if business.stripe_account_id == stripe_account_id:
                business.details_submitted = details_submitted
                business.charges_enabled = charges_enabled
                business.payouts_enabled = payouts_enabled
                return True
        return False

    # ---------
    # wallet store
    # ---------

    def get_wallet(self, user_id: str, business_id: str) -> Optional[Wallet]:
        return self.wallets.get((user_id, business_id))

    def upsert_wallet(
        self,
        user_id: str,
        business_id: str,
        balance_delta: Decimal = Decimal("0"),
        balance: Optional[Decimal] = None,
        referral_delta: Decimal = Decimal("0"),
    ) -> Wallet:
        if balance is not None and balance_delta:
            raise ValueError("pass either balance_delta or balance, not both")

        with self._lock:
            key = (user_id, business_id)
            wallet = self.wallets.get(key)
            if wallet is None:
                wallet = Wallet(id=str(uuid.uuid4()), user_id=user_id, business_id=business_id)
                self.wallets[key] = wallet

            if balance is None:
                wallet.balance += balance_delta
            else:
                wallet.balance = balance
            wallet.balance_from_referrals += referral_delta
            return wallet

    # ---------
    # transaction ledger
    # ---------

    def exists_by_payment_id(self, payment_id: str) -> bool:
        return payment_id in self.transactions

    def insert_transaction(self, tx: Transaction) -> Transaction:
        with self._lock:
            if tx.payment_id in self.transactions:
                raise DuplicatePaymentError(tx.payment_id)
            self.transactions[tx.payment_id] = tx
            return tx

    def sum_cashback_earned(self, user_id: str, business_id: str) -> Decimal:
        return sum(
            (
                tx.cashback_earned
                for tx in self.transactions.values()
                if tx.user_id == user_id
                and tx.business_id == business_id
                and tx.status == STATUS_COMPLETED
            ),
            Decimal("0"),
        )

