from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Optional

from errors import InvalidEventError
from models import CENT


@dataclass(frozen=True)
class FeePolicy:
    """percentages applied to the gross amount of a settled payment."""

    platform_fee_rate: Decimal = Decimal("0.10")
    cashback_rate: Decimal = Decimal("0.05")
    referral_rate: Decimal = Decimal("0.01")

    @classmethod
    def from_settings(cls, settings) -> "FeePolicy":
        return cls(
            platform_fee_rate=settings.platform_fee_rate,
            cashback_rate=settings.cashback_rate,
            referral_rate=settings.referral_rate,
        )


@dataclass(frozen=True)
class Splits:
    amount: Decimal
    platform_fee: Decimal
    business_net: Decimal
    cashback: Decimal
    referral_reward: Optional[Decimal]

    def to_dict(self):
        return {
            "amount": f"{self.amount:.2f}",
            "platform_fee": f"{self.platform_fee:.2f}",
            "business_net": f"{self.business_net:.2f}",
            "cashback": f"{self.cashback:.2f}",
            "referral_reward": (
                f"{self.referral_reward:.2f}" if self.referral_reward is not None else None
            ),
        }


def _share(amount: Decimal, rate: Decimal) -> Decimal:
    return (amount * rate).quantize(CENT, rounding=ROUND_DOWN)


def from_minor_units(minor) -> Decimal:
    """processor amounts are integer cents."""
    if isinstance(minor, bool) or not isinstance(minor, int):
        raise InvalidEventError(f"amount must be an integer number of cents, got {minor!r}")
    return (Decimal(minor) / 100).quantize(CENT)


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


def compute_splits(amount, has_referrer: bool, policy: FeePolicy = FeePolicy()) -> Splits:
    """
    amount: gross payment in major units (Decimal)
    has_referrer: whether the purchaser has a referred_by user

    the platform fee is only informational here: the processor takes it out of
    the business's proceeds and it never touches a wallet.
    referral_reward is None (not 0) when there is no referrer.
    """
    gross = Decimal(amount).quantize(CENT)
    if gross <= 0:
        raise InvalidEventError(f"amount must be at least 0.01, got {amount}")

    platform_fee = _share(gross, policy.platform_fee_rate)
    cashback = _share(gross, policy.cashback_rate)
    referral_reward = _share(gross, policy.referral_rate) if has_referrer else None

    return Splits(
        amount=gross,
        platform_fee=platform_fee,
        business_net=gross - platform_fee,
        cashback=cashback,
        referral_reward=referral_reward,
    )
