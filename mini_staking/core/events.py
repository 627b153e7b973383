"""Observation of WithdrawDebug events emitted by the staking contract.

Events are telemetry only. They are compared against local reward
projections and logged, but they never change balances, stakes or
transaction state.
"""
import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .ledger import StakingLedger
from .reader import StakeReader
from .rewards import reward
from .units import format_units


class WithdrawDebugEvent(BaseModel):
    """Decoded WithdrawDebug payload. Every contract field is required."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    user: str
    stake_id: int = Field(alias="stakeId")
    stake_amount: int = Field(alias="stakeAmount")
    reward_multiplier: int = Field(alias="rewardMultiplier")
    calculated_reward: int = Field(alias="calculatedReward")
    total_payout: int = Field(alias="totalPayout")
    contract_balance: int = Field(alias="contractBalance")
    block_number: Optional[int] = Field(default=None, alias="blockNumber")
    transaction_hash: Optional[str] = Field(default=None, alias="transactionHash")


@dataclass(frozen=True)
class Reconciliation:
    """Comparison of one event with what the client expected."""
    event: WithdrawDebugEvent
    expected_reward: Optional[int]

    @property
    def reward_matches(self) -> Optional[bool]:
        """None when the stake was not in the local cache."""
        if self.expected_reward is None:
            return None
        return self.expected_reward == self.event.calculated_reward

    @property
    def payout_consistent(self) -> bool:
        return self.event.total_payout == self.event.stake_amount + self.event.calculated_reward

    @property
    def sufficient(self) -> bool:
        return self.event.contract_balance >= self.event.total_payout


RECONCILIATION_HISTORY = 1000


class DebugEventObserver:
    """Polls WithdrawDebug logs for one account and reconciles them."""

    def __init__(
        self,
        ledger: StakingLedger,
        reader: StakeReader,
        poll_interval: float = 15.0,
        decimals: int = 18,
        history: int = RECONCILIATION_HISTORY,
    ):
        self.ledger = ledger
        self.reader = reader
        self.poll_interval = poll_interval
        self.decimals = decimals
        # Oldest entries are dropped once `history` is reached
        self.reconciliations: Deque[Reconciliation] = deque(maxlen=history)
        self.dropped = 0
        self.last_block: Optional[int] = None
        self._task: Optional[asyncio.Task] = None

    def handle(self, raw: Dict[str, Any]) -> Optional[Reconciliation]:
        """Validate and reconcile one raw event payload.

        Args:
            raw: Event arguments with the contract's camelCase names

        Returns:
            The reconciliation, or None if the payload was incomplete
        """
        try:
            event = WithdrawDebugEvent.model_validate(raw)
        except ValidationError as e:
            self.dropped += 1
            missing = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
            logger.warning(f"Dropping malformed WithdrawDebug event (fields: {', '.join(missing)}): {raw}")
            return None

        stake = self.reader.snapshot.stake_at(event.stake_id)
        expected = reward(event.stake_amount, stake.lock_period) if stake is not None else None
        result = Reconciliation(event=event, expected_reward=expected)
        self.reconciliations.append(result)

        logger.info(
            f"WithdrawDebug stake #{event.stake_id}: amount={format_units(event.stake_amount, self.decimals)} "
            f"reward={format_units(event.calculated_reward, self.decimals)} "
            f"payout={format_units(event.total_payout, self.decimals)} "
            f"contract_balance={format_units(event.contract_balance, self.decimals)}"
        )
        if result.reward_matches is False:
            logger.warning(
                f"Reward mismatch for stake #{event.stake_id}: expected "
                f"{format_units(expected, self.decimals)}, contract calculated "
                f"{format_units(event.calculated_reward, self.decimals)}"
            )
        if not result.sufficient:
            logger.warning(f"Contract balance was below the payout for stake #{event.stake_id}")
        return result

    async def poll(self) -> int:
        """Fetch and handle events since the last polled block.

        Returns:
            Number of events handled
        """
        if not self.reader.account:
            return 0
        latest = await self.ledger.block_number()
        if self.last_block is None:
            # Only events from now on
            self.last_block = latest
            return 0
        if latest <= self.last_block:
            return 0

        logs = await self.ledger.get_withdraw_debug_logs(self.last_block + 1, latest, self.reader.account)
        self.last_block = latest
        for raw in logs:
            self.handle(raw)
        return len(logs)

    async def _run(self) -> None:
        while True:
            try:
                await self.poll()
            except Exception as e:
                logger.error(f"Error polling WithdrawDebug events: {e}")
            await asyncio.sleep(self.poll_interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
