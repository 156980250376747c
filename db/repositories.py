from decimal import Decimal
from typing import Optional

from psycopg import Connection

from errors import BusinessNotFoundError, DuplicatePaymentError, UserNotFoundError
from models import Business, Transaction, User, Wallet, STATUS_COMPLETED


WALLET_COLUMNS = "id, user_id, business_id, balance, balance_from_referrals"


def _wallet_from_row(row) -> Wallet:
    return Wallet(
        id=row[0],
        user_id=row[1],
        business_id=row[2],
        balance=row[3],
        balance_from_referrals=row[4],
    )


def get_user(conn: Connection, user_id: str) -> User:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT id, referred_by FROM users WHERE id = %s",
            (user_id,),
        )
        row = cur.fetchone()
        if row is None:
            raise UserNotFoundError(user_id)
        return User(id=row[0], referred_by=row[1])


def get_business(conn: Connection, business_id: str) -> Business:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT id, stripe_id, stripe_details_submitted,
                   stripe_charges_enabled, stripe_payouts_enabled
            FROM businesses
            WHERE id = %s
            """,
            (business_id,),
        )
        row = cur.fetchone()
        if row is None:
            raise BusinessNotFoundError(business_id)
        return Business(
            id=row[0],
            stripe_account_id=row[1],
            details_submitted=row[2],
            charges_enabled=row[3],
            payouts_enabled=row[4],
        )


def update_business_account(
    conn: Connection,
    stripe_account_id: str,
    details_submitted: bool,
    charges_enabled: bool,
    payouts_enabled: bool,
) -> bool:
    """
    sync onboarding flags from an account.updated event.
    returns False if no business owns that stripe account.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE businesses
            SET stripe_details_submitted = %s,
                stripe_charges_enabled = %s,
                stripe_payouts_enabled = %s,
                updated_at = NOW()
            WHERE stripe_id = %s
            """,
            (details_submitted, charges_enabled, payouts_enabled, stripe_account_id),
        )
        return cur.rowcount == 1


def get_wallet(conn: Connection, user_id: str, business_id: str) -> Optional[Wallet]:
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT {WALLET_COLUMNS} FROM wallets WHERE user_id = %s AND business_id = %s",
            (user_id, business_id),
        )
        row = cur.fetchone()
        return _wallet_from_row(row) if row else None


def upsert_wallet(
    conn: Connection,
    user_id: str,
    business_id: str,
    balance_delta: Decimal = Decimal("0"),
    balance: Optional[Decimal] = None,
    referral_delta: Decimal = Decimal("0"),
) -> Wallet:
    """
    create the (user, business) wallet if missing, then apply the change.

    balance=None  -> balance += balance_delta
    balance=X     -> balance := X (absolute set, used for ledger recomputation)
    balance_from_referrals is always incremented by referral_delta.

    the ON CONFLICT path also takes the row lock, so concurrent settlements for
    the same wallet queue up behind each other.
    """
    if balance is not None and balance_delta:
        raise ValueError("pass either balance_delta or balance, not both")

    if balance is None:
        balance_sql = "wallets.balance + EXCLUDED.balance"
        balance_value = balance_delta
    else:
        balance_sql = "EXCLUDED.balance"
        balance_value = balance

    with conn.cursor() as cur:
        cur.execute(
            f"""
            INSERT INTO wallets (user_id, business_id, balance, balance_from_referrals)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (user_id, business_id)
            DO UPDATE SET
                balance = {balance_sql},
                balance_from_referrals =
                    wallets.balance_from_referrals + EXCLUDED.balance_from_referrals,
                updated_at = NOW()
            RETURNING {WALLET_COLUMNS}
            """,
            (user_id, business_id, balance_value, referral_delta),
        )
        return _wallet_from_row(cur.fetchone())


def exists_by_payment_id(conn: Connection, payment_id: str) -> bool:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT 1 FROM transactions WHERE payment_id = %s",
            (payment_id,),
        )
        return cur.fetchone() is not None


def insert_transaction(conn: Connection, tx: Transaction) -> Transaction:
    """
    append a settled payment to the ledger.

    uses the primary key on payment_id to enforce at-most-once:
    a conflicting insert returns no row and we raise DuplicatePaymentError,
    which the caller must treat as 'already processed' and roll back.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO transactions
                (payment_id, user_id, business_id, wallet_id, amount,
                 cashback_earned, referrer_id, referral_reward, status)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (payment_id) DO NOTHING
            RETURNING created_at
            """,
            (
                tx.payment_id,
                tx.user_id,
                tx.business_id,
                tx.wallet_id,
                tx.amount,
                tx.cashback_earned,
                tx.referrer_id,
                tx.referral_reward,
                tx.status,
            ),
        )
        row = cur.fetchone()
        if row is None:
            raise DuplicatePaymentError(tx.payment_id)
        tx.created_at = row[0]
        return tx


def sum_cashback_earned(conn: Connection, user_id: str, business_id: str) -> Decimal:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT COALESCE(SUM(cashback_earned), 0)
            FROM transactions
            WHERE user_id = %s AND business_id = %s AND status = %s
            """,
            (user_id, business_id, STATUS_COMPLETED),
        )
        return Decimal(cur.fetchone()[0])

