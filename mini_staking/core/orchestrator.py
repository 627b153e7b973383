"""Submission and confirmation of staking transactions.

Every write goes through `TransactionOrchestrator._submit`, which takes a
`CallDescriptor` describing what to send and which cached reads to refresh
once the transaction is confirmed.

Concurrency rules:

* Withdrawals share one request slot. A withdrawal (normal or emergency)
  issued while another is unresolved is rejected with
  `WithdrawalInProgress`; it is never queued and never replaces the first.
* Approve and stake each reject a second submission of the same kind while
  the first is in flight (`FlowBusy`).
* Submissions of different kinds are queued on one lock so that transactions
  from the same account are broadcast one after another.
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple

from loguru import logger

from .errors import (
    GENERIC_FAILURE_MESSAGE,
    FlowBusy,
    StakeValidationError,
    TransactionFailed,
    WithdrawalInProgress,
    describe_failure,
)
from .ledger import StakingLedger
from .reader import ALLOWANCE, LEDGER_BALANCE, TOKEN_BALANCE, USER_STAKES, StakeReader
from .stake import LOCK_PERIODS, is_eligible_for_emergency_withdrawal, is_ready_for_withdrawal, now_ms
from .units import to_base_units


class TxStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class FlowStage(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    QUEUED = "queued"
    AWAITING_SIGNATURE = "awaiting_signature"
    SUBMITTED = "submitted"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    FAILED = "failed"


IN_FLIGHT_STAGES = (
    FlowStage.QUEUED,
    FlowStage.AWAITING_SIGNATURE,
    FlowStage.SUBMITTED,
    FlowStage.CONFIRMING,
)


@dataclass
class TransactionState:
    """Outcome of the latest transaction of one flow kind."""
    status: TxStatus = TxStatus.IDLE
    stage: FlowStage = FlowStage.IDLE
    tx_hash: Optional[str] = None
    error: Optional[str] = None

    @property
    def in_flight(self) -> bool:
        return self.stage in IN_FLIGHT_STAGES


class WithdrawalKind(str, Enum):
    NORMAL = "normal"
    EMERGENCY = "emergency"


@dataclass(frozen=True)
class WithdrawalRequest:
    kind: WithdrawalKind
    stake_index: int


@dataclass(frozen=True)
class CallDescriptor:
    """What to send and what to refresh once it is confirmed."""
    name: str
    send: Callable[[], Awaitable[str]]
    invalidates: Tuple[str, ...] = ()
    failure_message: str = GENERIC_FAILURE_MESSAGE


@dataclass
class TransactionStates:
    approve: TransactionState = field(default_factory=TransactionState)
    stake: TransactionState = field(default_factory=TransactionState)
    withdraw: TransactionState = field(default_factory=TransactionState)


class TransactionOrchestrator:
    """Drives approve, stake, withdraw and emergency withdraw flows."""

    def __init__(
        self,
        ledger: StakingLedger,
        reader: StakeReader,
        confirmation_timeout: float = 120.0,
        decimals: int = 18,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize orchestrator.

        Args:
            ledger: Remote ledger used for writes
            reader: Read model refreshed after confirmed writes
            confirmation_timeout: Seconds to wait for a receipt
            decimals: Token decimals used to parse amounts
            clock: Current time in milliseconds
        """
        self.ledger = ledger
        self.reader = reader
        self.confirmation_timeout = confirmation_timeout
        self.decimals = decimals
        self.clock = clock
        self.states = TransactionStates()
        self.withdrawal_request: Optional[WithdrawalRequest] = None
        self.last_error: Optional[str] = None
        self._write_lock = asyncio.Lock()

    @property
    def account(self) -> Optional[str]:
        return self.reader.account

    @property
    def withdrawing_index(self) -> Optional[int]:
        request = self.withdrawal_request
        if request is not None and request.kind == WithdrawalKind.NORMAL:
            return request.stake_index
        return None

    @property
    def emergency_withdrawing_index(self) -> Optional[int]:
        request = self.withdrawal_request
        if request is not None and request.kind == WithdrawalKind.EMERGENCY:
            return request.stake_index
        return None

    # Validation

    def _reject(self, error: StakeValidationError) -> StakeValidationError:
        self.last_error = str(error)
        logger.warning(f"Validation failed: {error}")
        return error

    def _require_account(self) -> None:
        if not self.account:
            raise self._reject(StakeValidationError("No wallet address available. Load a signing key first."))

    def _parse_amount(self, amount) -> int:
        try:
            return to_base_units(amount, self.decimals)
        except StakeValidationError as e:
            raise self._reject(e)

    def validate_approve(self, amount) -> int:
        """Check approve preconditions.

        Returns:
            Amount in base units
        """
        self._require_account()
        if self.states.approve.in_flight:
            raise self._reject(FlowBusy("An approval is already in progress"))
        return self._parse_amount(amount)

    def validate_stake(self, amount, lock_period) -> Tuple[int, int]:
        """Check stake preconditions.

        Returns:
            (amount in base units, lock period)
        """
        self._require_account()
        if self.states.stake.in_flight:
            raise self._reject(FlowBusy("A stake is already in progress"))
        amount_in_wei = self._parse_amount(amount)
        try:
            period = int(lock_period)
        except (TypeError, ValueError):
            raise self._reject(StakeValidationError(f"Invalid lock period: {lock_period!r}"))
        if period not in LOCK_PERIODS:
            raise self._reject(StakeValidationError(f"Invalid lock period: {period}"))

        allowance = self.reader.snapshot.allowance
        if allowance is None:
            raise self._reject(StakeValidationError("Allowance not loaded yet. Please try again."))
        if allowance < amount_in_wei:
            raise self._reject(StakeValidationError(
                "Insufficient allowance. Approve the staking contract for at least the stake amount first."
            ))
        return amount_in_wei, period

    def _claim_withdrawal(self, kind: WithdrawalKind, stake_index: int) -> WithdrawalRequest:
        self._require_account()
        if self.withdrawal_request is not None:
            current = self.withdrawal_request
            raise self._reject(WithdrawalInProgress(
                f"A {current.kind.value} withdrawal of stake #{current.stake_index} is still in progress"
            ))

        stake = self.reader.snapshot.stake_at(stake_index)
        if stake is None:
            raise self._reject(StakeValidationError(f"No stake at index {stake_index}"))
        if kind == WithdrawalKind.NORMAL and not is_ready_for_withdrawal(stake, self.clock()):
            raise self._reject(StakeValidationError(f"Stake #{stake_index} is not ready for withdrawal"))
        if kind == WithdrawalKind.EMERGENCY and not is_eligible_for_emergency_withdrawal(stake):
            raise self._reject(StakeValidationError(f"Stake #{stake_index} is not active"))

        request = WithdrawalRequest(kind, stake_index)
        self.withdrawal_request = request
        return request

    def _validate(self, state: TransactionState, check: Callable, *args):
        """Run `check` with the flow in VALIDATING, unless it is already in flight."""
        if state.in_flight:
            return check(*args)
        state.stage = FlowStage.VALIDATING
        try:
            return check(*args)
        finally:
            state.stage = FlowStage.IDLE

    # Flows

    async def approve(self, amount) -> TransactionState:
        """Approve the staking contract to spend `amount` tokens."""
        amount_in_wei = self._validate(self.states.approve, self.validate_approve, amount)
        spender = self.ledger.staking_address
        logger.info(f"Approving {amount} tokens for {spender}")
        return await self._submit(
            CallDescriptor(
                name="approve",
                send=lambda: self.ledger.approve(spender, amount_in_wei),
                invalidates=(ALLOWANCE,),
                failure_message="Approval failed. Please try again.",
            ),
            self.states.approve,
        )

    async def stake(self, amount, lock_period) -> TransactionState:
        """Stake `amount` tokens for the given lock period."""
        amount_in_wei, period = self._validate(self.states.stake, self.validate_stake, amount, lock_period)
        logger.info(f"Staking {amount} tokens with lock period {period}")
        return await self._submit(
            CallDescriptor(
                name="stake",
                send=lambda: self.ledger.stake(amount_in_wei, period),
                invalidates=(USER_STAKES, TOKEN_BALANCE, ALLOWANCE, LEDGER_BALANCE),
                failure_message="Staking failed. Please make sure you have enough tokens and have approved the contract.",
            ),
            self.states.stake,
        )

    async def withdraw(self, stake_index: int) -> TransactionState:
        """Withdraw a matured stake with its reward."""
        self._validate(self.states.withdraw, self._claim_withdrawal, WithdrawalKind.NORMAL, stake_index)
        return await self._run_withdrawal(
            CallDescriptor(
                name=f"withdraw #{stake_index}",
                send=lambda: self.ledger.withdraw(stake_index),
                invalidates=(USER_STAKES, TOKEN_BALANCE, LEDGER_BALANCE),
                failure_message="Withdrawal failed. Please try again.",
            )
        )

    async def emergency_withdraw(self, stake_index: int) -> TransactionState:
        """Withdraw an active stake early, accepting the ledger's penalty."""
        self._validate(self.states.withdraw, self._claim_withdrawal, WithdrawalKind.EMERGENCY, stake_index)
        return await self._run_withdrawal(
            CallDescriptor(
                name=f"emergency withdraw #{stake_index}",
                send=lambda: self.ledger.emergency_withdraw(stake_index),
                invalidates=(USER_STAKES, TOKEN_BALANCE, LEDGER_BALANCE),
                failure_message="Emergency withdrawal failed. Please try again.",
            )
        )

    async def _run_withdrawal(self, call: CallDescriptor) -> TransactionState:
        try:
            return await self._submit(call, self.states.withdraw)
        finally:
            self.withdrawal_request = None

    async def _submit(self, call: CallDescriptor, state: TransactionState) -> TransactionState:
        """Send a transaction, wait for its receipt and refresh affected reads.

        Remote errors never propagate: they end the flow in FAILED with
        `state.error` and `last_error` set. Cancellation, including while
        queued behind another write, ends the flow in IDLE and re-raises.
        """
        state.status = TxStatus.PENDING
        state.tx_hash = None
        state.error = None
        self._advance(call, state, FlowStage.QUEUED)

        try:
            async with self._write_lock:
                self._advance(call, state, FlowStage.AWAITING_SIGNATURE)
                state.tx_hash = await call.send()
                self._advance(call, state, FlowStage.SUBMITTED)

                self._advance(call, state, FlowStage.CONFIRMING)
                receipt = await self.ledger.wait_for_receipt(state.tx_hash, self.confirmation_timeout)
                if not receipt.succeeded:
                    raise TransactionFailed(f"{call.name} reverted in block {receipt.block_number}", state.tx_hash)
        except asyncio.CancelledError:
            logger.warning(f"{call.name} cancelled while {state.stage.value}")
            state.status = TxStatus.ERROR
            state.error = call.failure_message
            state.stage = FlowStage.IDLE
            raise
        except Exception as e:
            state.status = TxStatus.ERROR
            state.error = describe_failure(e, call.failure_message)
            self.last_error = state.error
            self._advance(call, state, FlowStage.FAILED)
            logger.error(f"{call.name} failed: {e}")
            state.stage = FlowStage.IDLE
            return state

        self._advance(call, state, FlowStage.CONFIRMED)
        logger.info(f"{call.name} confirmed: {state.tx_hash}")
        try:
            await self.reader.invalidate(*call.invalidates)
        finally:
            state.status = TxStatus.SUCCESS
            self.last_error = None
            state.stage = FlowStage.IDLE
        return state

    @staticmethod
    def _advance(call: CallDescriptor, state: TransactionState, stage: FlowStage) -> None:
        logger.debug(f"{call.name}: {state.stage.value} -> {stage.value}")
        state.stage = stage
