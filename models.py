from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

CENT = Decimal("0.01")

STATUS_COMPLETED = "completed"


def money(value) -> Decimal:
    """coerce to a 2-decimal Decimal (exact for anything already in cents)."""
    return Decimal(value).quantize(CENT)


@dataclass
class User:
    id: str
    referred_by: Optional[str] = None


@dataclass
class Business:
    id: str
    stripe_account_id: Optional[str] = None
    details_submitted: bool = False
    charges_enabled: bool = False
    payouts_enabled: bool = False


@dataclass
class Wallet:
    id: str
    user_id: str
    business_id: str
    balance: Decimal = Decimal("0.00")
    balance_from_referrals: Decimal = Decimal("0.00")

    def to_dict(self):
        return {
            "wallet_id": self.id,
            "user_id": self.user_id,
            "business_id": self.business_id,
            "balance": f"{self.balance:.2f}",
            "balance_from_referrals": f"{self.balance_from_referrals:.2f}",
        }


@dataclass
class Transaction:
    """one row per settled payment. payment_id is the idempotency key."""

    payment_id: str
    user_id: str
    business_id: str
    wallet_id: str
    amount: Decimal
    cashback_earned: Decimal
    referrer_id: Optional[str] = None
    referral_reward: Optional[Decimal] = None
    status: str = STATUS_COMPLETED
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "payment_id": self.payment_id,
            "user_id": self.user_id,
            "business_id": self.business_id,
            "wallet_id": self.wallet_id,
            "amount": f"{self.amount:.2f}",
            "cashback_earned": f"{self.cashback_earned:.2f}",
            "referrer_id": self.referrer_id,
            "referral_reward": (
                f"{self.referral_reward:.2f}" if self.referral_reward is not None else None
            ),
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
