"""Staking session wiring reader, orchestrator, scheduler and event observer."""
from dataclasses import dataclass
from typing import List, Optional

from loguru import logger

from .config import StakingConfig
from .events import DebugEventObserver
from .ledger import StakingLedger
from .orchestrator import TransactionOrchestrator
from .reader import ChangeListener, StakeReader
from .rewards import (
    EmergencyProjection,
    SufficiencyReport,
    check_sufficiency,
    emergency_projection,
    reward,
    total_staked_active,
    total_staked_all,
)
from .scheduler import MaturedCallback, ReadinessScheduler
from .stake import (
    Stake,
    StakeStatus,
    is_eligible_for_emergency_withdrawal,
    is_ready_for_withdrawal,
    now_ms,
    stake_status,
)


@dataclass(frozen=True)
class StakeView:
    """Display data for one stake."""
    index: int
    stake: Stake
    status: StakeStatus
    ready: bool
    emergency_eligible: bool
    projected_reward: int
    projected_total: int
    emergency: EmergencyProjection


class StakingController:
    """One user's staking session.

    Owns the read model and the background loops; all writes go through
    `orchestrator`.
    """

    def __init__(
        self,
        ledger: StakingLedger,
        account: Optional[str],
        config: Optional[StakingConfig] = None,
        on_matured: Optional[MaturedCallback] = None,
        on_change: Optional[ChangeListener] = None,
        clock=now_ms,
    ):
        """Initialize controller.

        Args:
            ledger: Remote ledger
            account: Connected address, or None when read-only
            config: Client configuration; defaults if None
            on_matured: Callback for stakes that became withdrawable
            on_change: Called with (field, old, new) when a cached read changes
            clock: Current time in milliseconds
        """
        self.config = config or StakingConfig()
        self.ledger = ledger
        self.clock = clock
        decimals = self.config.token_decimals
        self.reader = StakeReader(ledger, account, self.config.poll_interval, decimals)
        if on_change is not None:
            self.reader.subscribe(on_change)
        self.orchestrator = TransactionOrchestrator(
            ledger,
            self.reader,
            confirmation_timeout=self.config.confirmation_timeout,
            decimals=decimals,
            clock=clock,
        )
        self.scheduler = ReadinessScheduler(self.reader, self.config.readiness_interval, on_matured, clock)
        self.events = DebugEventObserver(ledger, self.reader, self.config.event_poll_interval, decimals)

    @property
    def account(self) -> Optional[str]:
        return self.reader.account

    async def refresh(self) -> None:
        await self.reader.refresh_all()

    async def start(self) -> None:
        """Load the read model, then start polling, readiness checks and event observation."""
        await self.reader.refresh_all()
        self.reader.start()
        self.scheduler.start()
        self.events.start()
        logger.debug(f"Staking session started for {self.account or 'read-only'}")

    async def stop(self) -> None:
        await self.events.stop()
        await self.scheduler.stop()
        await self.reader.stop()

    def stake_view(self, index: int, stake: Stake, now: Optional[int] = None) -> StakeView:
        now = self.clock() if now is None else now
        projected_reward = reward(stake.amount, stake.lock_period)
        return StakeView(
            index=index,
            stake=stake,
            status=stake_status(stake, now),
            ready=is_ready_for_withdrawal(stake, now),
            emergency_eligible=is_eligible_for_emergency_withdrawal(stake),
            projected_reward=projected_reward,
            projected_total=stake.amount + projected_reward,
            emergency=emergency_projection(stake.amount, self.config.emergency_penalty_bps),
        )

    def stake_views(self, include_withdrawn: bool = True) -> List[StakeView]:
        """Views of the cached stakes in ledger order."""
        now = self.clock()
        views = [
            self.stake_view(index, stake, now)
            for index, stake in enumerate(self.reader.snapshot.user_stakes or ())
        ]
        if not include_withdrawn:
            views = [view for view in views if view.stake.active]
        return views

    def check_contract_balance(self) -> Optional[SufficiencyReport]:
        """Sufficiency of the ledger balance for this user's active stakes.

        Returns:
            None until both the stakes and the ledger balance have been read
        """
        snapshot = self.reader.snapshot
        if snapshot.user_stakes is None or snapshot.ledger_token_balance is None:
            return None
        return check_sufficiency(snapshot.user_stakes, snapshot.ledger_token_balance)

    @property
    def total_staked_all(self) -> int:
        return total_staked_all(self.reader.snapshot.user_stakes)

    @property
    def total_staked_active(self) -> int:
        return total_staked_active(self.reader.snapshot.user_stakes)
