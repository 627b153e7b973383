"""Cached reads of balances, allowance and stakes."""
import asyncio
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from loguru import logger

from .ledger import StakingLedger
from .stake import Stake
from .units import format_units

TOKEN_BALANCE = "token_balance"
ALLOWANCE = "allowance"
USER_STAKES = "user_stakes"
LEDGER_BALANCE = "ledger_token_balance"

ALL_FIELDS = (TOKEN_BALANCE, ALLOWANCE, USER_STAKES, LEDGER_BALANCE)

# (field, old value, new value)
ChangeListener = Callable[[str, Any, Any], None]


@dataclass(frozen=True)
class ReadModel:
    """Snapshot of everything read from the ledger.

    A field is None until its first successful read.
    """
    token_balance: Optional[int] = None
    allowance: Optional[int] = None
    user_stakes: Optional[Tuple[Stake, ...]] = None
    ledger_token_balance: Optional[int] = None
    updated_at: Optional[float] = None

    def stake_at(self, index: int) -> Optional[Stake]:
        if self.user_stakes is None or not 0 <= index < len(self.user_stakes):
            return None
        return self.user_stakes[index]


class StakeReader:
    """Single writer of the read model.

    Every refresh builds a new `ReadModel`; readers holding the previous
    snapshot keep a consistent view. Listeners are only told about values
    that actually changed.
    """

    def __init__(
        self,
        ledger: StakingLedger,
        account: Optional[str],
        poll_interval: float = 4.0,
        decimals: int = 18,
    ):
        self.ledger = ledger
        self.account = account
        self.poll_interval = poll_interval
        self.decimals = decimals
        self.snapshot = ReadModel()
        self.errors: Dict[str, str] = {}
        self._listeners: List[ChangeListener] = []
        self._task: Optional[asyncio.Task] = None

    def subscribe(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def _fetcher(self, field: str) -> Optional[Callable[[], Awaitable[Any]]]:
        if field == LEDGER_BALANCE:
            return lambda: self.ledger.balance_of(self.ledger.staking_address)
        if self.account is None:
            return None
        if field == TOKEN_BALANCE:
            return lambda: self.ledger.balance_of(self.account)
        if field == ALLOWANCE:
            return lambda: self.ledger.allowance(self.account, self.ledger.staking_address)
        if field == USER_STAKES:
            async def fetch_stakes():
                return tuple(await self.ledger.get_user_staking_info(self.account))
            return fetch_stakes
        raise ValueError(f"Unknown read-model field: {field}")

    async def refresh(self, field: str) -> bool:
        """Re-read one field.

        Args:
            field: One of the read-model field names

        Returns:
            True if the read succeeded. On failure the cached value is kept.
        """
        fetch = self._fetcher(field)
        if fetch is None:
            return False
        try:
            value = await fetch()
        except Exception as e:
            self.errors[field] = str(e)
            logger.error(f"Error reading {field}: {e}")
            return False

        self.errors.pop(field, None)
        old = getattr(self.snapshot, field)
        if old == value:
            return True

        self.snapshot = replace(self.snapshot, **{field: value, "updated_at": time.time()})
        self._log_change(field, value)
        for listener in list(self._listeners):
            listener(field, old, value)
        return True

    async def refresh_all(self) -> Dict[str, bool]:
        """Refresh every field independently; one failure does not stop the others."""
        results = await asyncio.gather(*(self.refresh(field) for field in ALL_FIELDS))
        return dict(zip(ALL_FIELDS, results))

    async def invalidate(self, *fields: str) -> None:
        """Re-read the given fields right away, e.g. after a confirmed write."""
        if not fields:
            fields = ALL_FIELDS
        logger.debug(f"Invalidating {', '.join(fields)}")
        await asyncio.gather(*(self.refresh(field) for field in fields))

    def _log_change(self, field: str, value: Any) -> None:
        if field == USER_STAKES:
            logger.info(f"User stakes updated: {len(value)} stake(s)")
            for index, stake in enumerate(value):
                logger.debug(
                    f"  #{index}: {format_units(stake.amount, self.decimals)} "
                    f"active={stake.active} end_time={stake.end_time} lock_period={stake.lock_period}"
                )
        else:
            logger.info(f"{field.replace('_', ' ').capitalize()} updated: {format_units(value, self.decimals)}")

    async def _poll(self) -> None:
        while True:
            await self.refresh_all()
            await asyncio.sleep(self.poll_interval)

    def start(self) -> asyncio.Task:
        """Start polling in the background."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._poll())
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
