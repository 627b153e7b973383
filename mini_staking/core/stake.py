"""Stake records and withdrawal readiness."""
import time
from enum import Enum
from typing import Any, Optional, Sequence

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

LOCK_PERIODS = (0, 1, 2)


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


class StakeStatus(str, Enum):
    """Display status of a stake."""
    LOCKED = "Locked"
    READY = "Ready to Withdraw"
    WITHDRAWN = "Withdrawn"


class Stake(BaseModel):
    """One deposit as reported by the staking contract.

    Instances are immutable and compare field by field, so two reads of the
    same on-chain record are equal even though they are distinct objects.
    """
    model_config = ConfigDict(frozen=True)

    amount: int
    start_time: int
    end_time: int
    lock_period: int
    reward_multiplier: int
    active: bool

    @field_validator("amount", "start_time", "end_time", "reward_multiplier")
    @classmethod
    def _unsigned(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be unsigned")
        return value

    @field_validator("lock_period")
    @classmethod
    def _known_lock_period(cls, value: int) -> int:
        if value not in LOCK_PERIODS:
            raise ValueError(f"lock period must be one of {LOCK_PERIODS}, got {value}")
        return value

    @model_validator(mode="after")
    def _consistent(self) -> "Stake":
        if self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        if self.active and self.amount == 0:
            raise ValueError("active stake must have a positive amount")
        return self

    @classmethod
    def from_tuple(cls, raw: Sequence[Any]) -> "Stake":
        """Build a stake from a getUserStakingInfo tuple.

        Args:
            raw: (amount, startTime, endTime, lockPeriod, rewardMultiplier, active)
        """
        amount, start_time, end_time, lock_period, reward_multiplier, active = raw
        return cls(
            amount=int(amount),
            start_time=int(start_time),
            end_time=int(end_time),
            lock_period=int(lock_period),
            reward_multiplier=int(reward_multiplier),
            active=bool(active),
        )


def stake_status(stake: Stake, now: Optional[int] = None) -> StakeStatus:
    """Status of a stake at `now` (milliseconds)."""
    now = now_ms() if now is None else now
    if not stake.active:
        return StakeStatus.WITHDRAWN
    if stake.end_time * 1000 > now:
        return StakeStatus.LOCKED
    return StakeStatus.READY


def is_ready_for_withdrawal(stake: Optional[Stake], now: Optional[int] = None) -> bool:
    """Whether a normal withdrawal is allowed: active and past its end time."""
    if stake is None or not stake.active:
        return False
    now = now_ms() if now is None else now
    return stake.end_time * 1000 <= now


def is_eligible_for_emergency_withdrawal(stake: Optional[Stake]) -> bool:
    # Maturity does not matter here; the ledger applies the penalty.
    return stake is not None and stake.active
