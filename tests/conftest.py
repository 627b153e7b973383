"""Test configuration and fixtures for the MINI staking client."""
import sys
import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest
from loguru import logger

from mini_staking.core.config import StakingConfig
from mini_staking.core.errors import ConfirmationTimeout
from mini_staking.core.ledger import StakingLedger, TxReceipt
from mini_staking.core.reader import StakeReader
from mini_staking.core.stake import Stake

ACCOUNT = "0x1111111111111111111111111111111111111111"
OTHER_ACCOUNT = "0x2222222222222222222222222222222222222222"
STAKING_ADDRESS = "0x3333333333333333333333333333333333333333"
TOKEN_ADDRESS = "0x4444444444444444444444444444444444444444"
TREASURY = "0x5555555555555555555555555555555555555555"

TOKEN = 10 ** 18
NOW_MS = 1_700_000_000_000
LOCK_DURATIONS = {0: 30 * 86400, 1: 90 * 86400, 2: 180 * 86400}
STORED_MULTIPLIERS = {0: 110 * TOKEN // 100, 1: 125 * TOKEN // 100, 2: 150 * TOKEN // 100}


def make_stake(amount=100 * TOKEN, lock_period=1, end_offset_s=3600, active=True, now_ms=NOW_MS) -> Stake:
    """Build a stake ending `end_offset_s` seconds after `now_ms`."""
    end_time = now_ms // 1000 + end_offset_s
    return Stake(
        amount=amount,
        start_time=end_time - LOCK_DURATIONS[lock_period],
        end_time=end_time,
        lock_period=lock_period,
        reward_multiplier=STORED_MULTIPLIERS[lock_period],
        active=active,
    )


class FakeClock:
    """Controllable millisecond clock."""

    def __init__(self, now: int = NOW_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class FakeLedger(StakingLedger):
    """In-memory staking ledger.

    Writes take effect when their receipt is awaited. Set `hold_receipts` to
    park confirmations until `release()` is called.
    """

    staking_address = STAKING_ADDRESS
    token_address = TOKEN_ADDRESS

    def __init__(self, sender: str = ACCOUNT, clock: Optional[FakeClock] = None):
        self.sender = sender
        self.clock = clock or FakeClock()
        self.balances: Dict[str, int] = {}
        self.allowances: Dict[tuple, int] = {}
        self.stakes: Dict[str, List[Stake]] = {}
        self.distributed = 0
        self.fail_reads: Dict[str, Exception] = {}
        self.send_error: Optional[Exception] = None
        self.receipt_status = 1
        self.timeout_receipts = False
        self.hold_receipts = False
        self.sent: List[tuple] = []
        self.logs: List[Dict[str, Any]] = []
        self.block = 100
        self.read_calls: Dict[str, int] = {}
        self._effects: Dict[str, Callable[[], None]] = {}
        self._release: Optional[asyncio.Event] = None

    async def __aenter__(self) -> "FakeLedger":
        return self

    async def __aexit__(self, *exc_info) -> None:
        pass

    def release(self) -> None:
        self._gate().set()

    def _gate(self) -> asyncio.Event:
        if self._release is None:
            self._release = asyncio.Event()
        return self._release

    def _read(self, name: str) -> None:
        self.read_calls[name] = self.read_calls.get(name, 0) + 1
        if name in self.fail_reads:
            raise self.fail_reads[name]

    # Reads

    async def balance_of(self, address: str) -> int:
        self._read("balance_of")
        return self.balances.get(address, 0)

    async def allowance(self, owner: str, spender: str) -> int:
        self._read("allowance")
        return self.allowances.get((owner, spender), 0)

    async def get_user_staking_info(self, address: str) -> List[Stake]:
        self._read("get_user_staking_info")
        return list(self.stakes.get(address, []))

    async def total_distributed(self) -> int:
        self._read("total_distributed")
        return self.distributed

    async def treasury_wallet(self) -> str:
        self._read("treasury_wallet")
        return TREASURY

    async def lock_period(self, index: int) -> int:
        self._read("lock_period")
        return LOCK_DURATIONS[index]

    async def multiplier(self, index: int) -> int:
        self._read("multiplier")
        return STORED_MULTIPLIERS[index]

    async def token_symbol(self) -> str:
        self._read("token_symbol")
        return "MINI"

    async def token_decimals(self) -> int:
        self._read("token_decimals")
        return 18

    async def block_number(self) -> int:
        self._read("block_number")
        return self.block

    # Writes

    def _submit(self, name: str, effect: Callable[[], None], *args) -> str:
        if self.send_error is not None:
            raise self.send_error
        tx_hash = "0x%064x" % (len(self.sent) + 1)
        self.sent.append((name,) + args)
        self._effects[tx_hash] = effect
        return tx_hash

    def _move(self, source: str, target: str, amount: int) -> None:
        self.balances[source] = self.balances.get(source, 0) - amount
        self.balances[target] = self.balances.get(target, 0) + amount

    async def approve(self, spender: str, amount: int) -> str:
        def effect():
            self.allowances[(self.sender, spender)] = amount
        return self._submit("approve", effect, spender, amount)

    async def stake(self, amount: int, lock_period: int) -> str:
        def effect():
            now_s = self.clock() // 1000
            self.stakes.setdefault(self.sender, []).append(Stake(
                amount=amount,
                start_time=now_s,
                end_time=now_s + LOCK_DURATIONS[lock_period],
                lock_period=lock_period,
                reward_multiplier=STORED_MULTIPLIERS[lock_period],
                active=True,
            ))
            self.allowances[(self.sender, STAKING_ADDRESS)] -= amount
            self._move(self.sender, STAKING_ADDRESS, amount)
        return self._submit("stake", effect, amount, lock_period)

    def _close_stake(self, index: int, payout: int) -> None:
        stakes = self.stakes[self.sender]
        stakes[index] = stakes[index].model_copy(update={"active": False})
        self._move(STAKING_ADDRESS, self.sender, payout)

    async def withdraw(self, stake_index: int) -> str:
        def effect():
            stake = self.stakes[self.sender][stake_index]
            self._close_stake(stake_index, stake.amount * stake.reward_multiplier // TOKEN)
        return self._submit("withdraw", effect, stake_index)

    async def emergency_withdraw(self, stake_index: int) -> str:
        def effect():
            stake = self.stakes[self.sender][stake_index]
            self._close_stake(stake_index, stake.amount * 7 // 10)
        return self._submit("emergency_withdraw", effect, stake_index)

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        if self.hold_receipts:
            await self._gate().wait()
        if self.timeout_receipts:
            raise ConfirmationTimeout(f"No receipt for {tx_hash} after {timeout}s", tx_hash)
        self.block += 1
        if self.receipt_status == 1:
            self._effects.pop(tx_hash)()
        return TxReceipt(tx_hash=tx_hash, status=self.receipt_status, block_number=self.block)

    # Events

    async def get_withdraw_debug_logs(self, from_block, to_block, user=None):
        self._read("get_withdraw_debug_logs")
        return [
            log for log in self.logs
            if from_block <= log.get("blockNumber", from_block) <= to_block
            and (user is None or log.get("user") == user)
        ]


async def wait_until(predicate: Callable[[], bool], attempts: int = 100) -> None:
    """Yield to the event loop until `predicate` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    """Ledger with a funded account and a funded staking contract."""
    fake = FakeLedger(clock=clock)
    fake.balances[ACCOUNT] = 1_000 * TOKEN
    fake.balances[STAKING_ADDRESS] = 10_000 * TOKEN
    fake.balances[TREASURY] = 50_000 * TOKEN
    return fake


@pytest.fixture
def reader(ledger):
    return StakeReader(ledger, ACCOUNT, poll_interval=0.01)


@pytest.fixture
def config():
    return StakingConfig(
        staking_contract_address=STAKING_ADDRESS,
        token_address=TOKEN_ADDRESS,
        poll_interval=0.01,
        readiness_interval=0.01,
        event_poll_interval=0.01,
    )


@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    """Isolated config directory with no environment overrides."""
    monkeypatch.setenv("MINI_STAKING_CONFIG_DIR", str(tmp_path))
    for name in (
        "MINI_STAKING_RPC_URL",
        "MINI_STAKING_CONTRACT_ADDRESS",
        "MINI_TOKEN_ADDRESS",
        "MINI_STAKING_PRIVATE_KEY",
        "MINI_STAKING_KEYSTORE_PASSWORD",
        "MINI_STAKING_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


@pytest.fixture(autouse=True)
def reset_logger():
    """Restore loguru's stderr sink after tests that replace it."""
    yield
    logger.remove()
    logger.add(sys.stderr)
