"""Reward projections and balance sufficiency.

All arithmetic is done on integers in token base units. Multipliers are
kept as `Decimal` for display and converted to fixed-point integers scaled by
`SCALE` before they touch an amount.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from .stake import Stake

SCALE = 10 ** 18

REWARD_MULTIPLIERS = {
    0: Decimal("1.10"),
    1: Decimal("1.25"),
    2: Decimal("1.50"),
}
DEFAULT_MULTIPLIER = Decimal("1.00")

# Projection only; the ledger enforces the real split.
DEFAULT_EMERGENCY_PENALTY_BPS = 3000
BPS_DENOMINATOR = 10_000


def multiplier_for(lock_period: int) -> Decimal:
    """Reward multiplier for a lock period; unknown periods earn nothing."""
    return REWARD_MULTIPLIERS.get(lock_period, DEFAULT_MULTIPLIER)


def scaled_bonus(lock_period: int) -> int:
    """`(multiplier - 1) * SCALE` as an exact integer."""
    return int((multiplier_for(lock_period) - 1) * SCALE)


def reward(amount: int, lock_period: int) -> int:
    """Reward paid on top of the principal at maturity, rounded down."""
    return amount * scaled_bonus(lock_period) // SCALE


def total_projected(stake: Stake) -> int:
    """Principal plus projected reward."""
    return stake.amount + reward(stake.amount, stake.lock_period)


def ledger_payout(stake: Stake, decimals: int = 18) -> int:
    """Payout implied by the multiplier the ledger stored for the stake.

    The ledger stores the full multiplier (e.g. 1.1 scaled by the token's
    decimals), so the result includes the principal.
    """
    return stake.amount * stake.reward_multiplier // (10 ** decimals)


@dataclass(frozen=True)
class EmergencyProjection:
    """Estimated outcome of an early withdrawal."""
    original_amount: int
    withdrawal_amount: int
    penalty_amount: int
    penalty_bps: int


def emergency_projection(amount: int, penalty_bps: int = DEFAULT_EMERGENCY_PENALTY_BPS) -> EmergencyProjection:
    if not 0 <= penalty_bps <= BPS_DENOMINATOR:
        raise ValueError(f"penalty_bps must be between 0 and {BPS_DENOMINATOR}")
    penalty = amount * penalty_bps // BPS_DENOMINATOR
    return EmergencyProjection(
        original_amount=amount,
        withdrawal_amount=amount - penalty,
        penalty_amount=penalty,
        penalty_bps=penalty_bps,
    )


@dataclass(frozen=True)
class SufficiencyReport:
    """Obligations of active stakes compared with the ledger's token balance."""
    ledger_balance: int
    total_principal: int
    total_rewards: int
    total_obligation: int
    sufficient: bool

    @property
    def surplus(self) -> int:
        """Ledger balance minus obligation; negative when short."""
        return self.ledger_balance - self.total_obligation


def check_sufficiency(stakes: Iterable[Stake], ledger_balance: int) -> SufficiencyReport:
    """Compare the ledger balance against principal plus rewards of active stakes.

    This only covers the stakes passed in. Obligations to stakers that are
    not in `stakes` are invisible here.

    Args:
        stakes: Stakes of one or more users; inactive ones are ignored
        ledger_balance: Token balance held by the staking contract

    Returns:
        Sufficiency report
    """
    active = [s for s in stakes if s.active]
    total_principal = sum(s.amount for s in active)
    total_rewards = sum(reward(s.amount, s.lock_period) for s in active)
    total_obligation = total_principal + total_rewards
    return SufficiencyReport(
        ledger_balance=ledger_balance,
        total_principal=total_principal,
        total_rewards=total_rewards,
        total_obligation=total_obligation,
        sufficient=ledger_balance >= total_obligation,
    )


def total_staked_all(stakes: Optional[Iterable[Stake]]) -> int:
    """Sum of every stake amount, withdrawn ones included."""
    return sum(s.amount for s in stakes or ())


def total_staked_active(stakes: Optional[Iterable[Stake]]) -> int:
    """Sum of the amounts of active stakes only."""
    return sum(s.amount for s in stakes or () if s.active)
