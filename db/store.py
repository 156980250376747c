from contextlib import contextmanager
from decimal import Decimal
from typing import Optional

import psycopg
from psycopg import Connection

from db import repositories
from models import Business, Transaction, User, Wallet

APPLICATION_NAME = "loya-settlement"


@contextmanager
def get_conn(dsn: str):
    """
    Postgres connection with autocommit off; callers commit or roll back.
    """
    with psycopg.connect(dsn, application_name=APPLICATION_NAME) as conn:
        conn.autocommit = False
        yield conn


class PostgresUnit:
    """repository calls bound to one open connection / transaction."""

    def __init__(self, conn: Connection):
        self.conn = conn

    def get_user(self, user_id: str) -> User:
        return repositories.get_user(self.conn, user_id)

    def get_business(self, business_id: str) -> Business:
        return repositories.get_business(self.conn, business_id)

    def update_business_account(self, stripe_account_id, details_submitted, charges_enabled, payouts_enabled) -> bool:
        return repositories.update_business_account(
            self.conn, stripe_account_id, details_submitted, charges_enabled, payouts_enabled
        )

    def get_wallet(self, user_id: str, business_id: str) -> Optional[Wallet]:
        return repositories.get_wallet(self.conn, user_id, business_id)

    def upsert_wallet(
        self,
        user_id: str,
        business_id: str,
        balance_delta: Decimal = Decimal("0"),
        balance: Optional[Decimal] = None,
        referral_delta: Decimal = Decimal("0"),
    ) -> Wallet:
        return repositories.upsert_wallet(
            self.conn,
            user_id,
            business_id,
            balance_delta=balance_delta,
            balance=balance,
            referral_delta=referral_delta,
        )

    def exists_by_payment_id(self, payment_id: str) -> bool:
        return repositories.exists_by_payment_id(self.conn, payment_id)

    def insert_transaction(self, tx: Transaction) -> Transaction:
        return repositories.insert_transaction(self.conn, tx)

    def sum_cashback_earned(self, user_id: str, business_id: str) -> Decimal:
        return repositories.sum_cashback_earned(self.conn, user_id, business_id)


class PostgresStore:
    """
    one connection + one transaction per atomic() block.
    nothing is opened until atomic() is entered.
    """

    def __init__(self, dsn: str):
        self.dsn = dsn

    @contextmanager
    def atomic(self):
        with get_conn(self.dsn) as conn:
            try:
                yield PostgresUnit(conn)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
