"""Contract health check.

Reads the contract's configuration and balances and checks whether it can
pay out every active stake of a given set of users. Each section is read
independently; a failing read is recorded and the remaining sections still
run.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from loguru import logger

from .ledger import StakingLedger
from .rewards import SufficiencyReport, check_sufficiency, ledger_payout
from .stake import LOCK_PERIODS, Stake


@dataclass
class LockTier:
    """Lock period configuration as stored by the contract."""
    index: int
    duration_seconds: int
    multiplier: int


@dataclass
class HealthReport:
    """Everything `check_contract` found, plus the sections that failed."""
    staking_address: str
    token_symbol: Optional[str] = None
    token_decimals: Optional[int] = None
    ledger_balance: Optional[int] = None
    total_distributed: Optional[int] = None
    lock_tiers: List[LockTier] = field(default_factory=list)
    treasury_wallet: Optional[str] = None
    treasury_balance: Optional[int] = None
    user_stakes: Dict[str, List[Stake]] = field(default_factory=dict)
    sufficiency: Optional[SufficiencyReport] = None
    total_ledger_payout: Optional[int] = None
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """No section failed and, if users were checked, the balance covers them."""
        if self.errors:
            return False
        return self.sufficiency is None or self.sufficiency.sufficient

    @property
    def ledger_payout_sufficient(self) -> Optional[bool]:
        """Sufficiency using the multipliers stored by the contract."""
        if self.total_ledger_payout is None or self.ledger_balance is None:
            return None
        return self.ledger_balance >= self.total_ledger_payout


def _record(report: HealthReport, section: str, error: Exception) -> None:
    report.errors[section] = str(error)
    logger.error(f"Error fetching {section}: {error}")


async def check_contract(
    ledger: StakingLedger,
    users: Sequence[str] = (),
    decimals: Optional[int] = None,
) -> HealthReport:
    """Run the health check.

    Args:
        ledger: Ledger to inspect
        users: Addresses whose active stakes must be covered
        decimals: Token decimals; read from the token if None

    Returns:
        Health report
    """
    report = HealthReport(staking_address=ledger.staking_address)

    try:
        report.token_symbol = await ledger.token_symbol()
        report.token_decimals = await ledger.token_decimals()
    except Exception as e:
        _record(report, "token info", e)
    if decimals is None:
        decimals = report.token_decimals if report.token_decimals is not None else 18

    try:
        report.ledger_balance = await ledger.balance_of(ledger.staking_address)
    except Exception as e:
        _record(report, "contract balance", e)

    try:
        report.total_distributed = await ledger.total_distributed()
    except Exception as e:
        _record(report, "total distributed", e)

    try:
        for index in LOCK_PERIODS:
            report.lock_tiers.append(LockTier(
                index=index,
                duration_seconds=await ledger.lock_period(index),
                multiplier=await ledger.multiplier(index),
            ))
    except Exception as e:
        _record(report, "lock periods", e)

    try:
        report.treasury_wallet = await ledger.treasury_wallet()
        report.treasury_balance = await ledger.balance_of(report.treasury_wallet)
    except Exception as e:
        _record(report, "treasury", e)

    if not users:
        return report

    try:
        for user in users:
            report.user_stakes[user] = await ledger.get_user_staking_info(user)
    except Exception as e:
        _record(report, "user stakes", e)
        return report

    all_stakes = [stake for stakes in report.user_stakes.values() for stake in stakes]
    report.total_ledger_payout = sum(ledger_payout(s, decimals) for s in all_stakes if s.active)
    if report.ledger_balance is not None:
        report.sufficiency = check_sufficiency(all_stakes, report.ledger_balance)
        logger.debug(
            f"Sufficiency over {len(users)} user(s): obligation={report.sufficiency.total_obligation} "
            f"balance={report.ledger_balance}"
        )
    return report
