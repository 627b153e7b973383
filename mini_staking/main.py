"""MINI staking CLI."""
import os
import sys
import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Optional, Sequence

import click
from loguru import logger

from .core.config import NETWORKS, StakingConfig, get_config_dir, load_config, save_config
from .core.controller import StakingController
from .core.errors import ConfigError, StakeValidationError
from .core.health import check_contract
from .core.ledger import Web3Ledger
from .core.orchestrator import TransactionState, TxStatus
from .core.reader import USER_STAKES
from .core.rewards import emergency_projection, ledger_payout, multiplier_for
from .core.units import format_units
from .core.wallet import StakingWallet

LOG_LEVEL_ENV = "MINI_STAKING_LOG_LEVEL"
SYMBOL = "MINI"

Action = Callable[[StakingController], Awaitable]


def _confirm_signature(description: str) -> bool:
    return click.confirm(f"Sign and send {description}?", default=True)


def _load_wallet(config: StakingConfig, yes: bool) -> StakingWallet:
    return StakingWallet.from_config(
        config,
        confirm=None if yes else _confirm_signature,
        password_prompt=lambda: click.prompt("Keystore password", hide_input=True),
    )


def _fail(message: str) -> None:
    logger.error(message)
    click.get_current_context().exit(1)


def _amount(value: int, decimals: int) -> str:
    return f"{format_units(value, decimals)} {SYMBOL}"


def _run(
    ctx: click.Context,
    action: Action,
    yes: bool = False,
    address: Optional[str] = None,
    require_account: bool = False,
    **controller_kwargs,
):
    """Open a ledger session, load the read model and run `action`.

    Args:
        ctx: Click context holding the network override
        action: Coroutine function receiving the controller
        yes: Sign without asking for confirmation
        address: Address to read instead of the wallet's
        require_account: Fail early when no address is available
    """
    try:
        config = load_config(network=ctx.obj.get("network"))
        wallet = _load_wallet(config, yes)
    except ConfigError as e:
        return _fail(str(e))

    account = address or wallet.address
    if require_account and not account:
        return _fail("No wallet address available. Set MINI_STAKING_PRIVATE_KEY or keystore_path.")

    async def runner():
        async with Web3Ledger(config, wallet) as ledger:
            controller = StakingController(ledger, account, config, **controller_kwargs)
            await controller.refresh()
            return await action(controller)

    try:
        return asyncio.run(runner())
    except StakeValidationError as e:
        return _fail(str(e))
    except (ConfigError, ConnectionError) as e:
        return _fail(str(e))


def _report(state: TransactionState, success_message: str) -> bool:
    if state.status == TxStatus.SUCCESS:
        click.echo(f"{success_message} (tx {state.tx_hash})")
        return True
    logger.error(state.error)
    if state.tx_hash:
        logger.error(f"Transaction: {state.tx_hash}")
    return False


@click.group()
@click.version_option(package_name="mini-staking")
@click.option('--network', type=click.Choice(sorted(NETWORKS)), help='Network preset to use')
@click.option(
    '--log-level',
    default=lambda: os.getenv(LOG_LEVEL_ENV, "INFO"),
    type=click.Choice(["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR"], case_sensitive=False),
    help='Log level (default from MINI_STAKING_LOG_LEVEL)',
)
@click.pass_context
def cli(ctx: click.Context, network: Optional[str], log_level: str):
    """MINI staking client: stake tokens, track rewards and withdraw."""
    logger.remove()
    logger.add(sys.stderr, level=log_level.upper())
    ctx.ensure_object(dict)
    ctx.obj["network"] = network


@cli.group(name="config")
def config_cmd():
    """Show or change client configuration."""
    pass


@config_cmd.command()
@click.pass_context
def show(ctx: click.Context):
    """Show the effective configuration."""
    try:
        config = load_config(network=ctx.obj.get("network"))
    except ConfigError as e:
        return _fail(str(e))
    click.echo(f"Config directory: {get_config_dir()}")
    for key, value in config.model_dump().items():
        click.echo(f"{key}: {value}")


@config_cmd.command(name="set", context_settings={"ignore_unknown_options": True})
@click.argument('key')
@click.argument('value')
def set_value(key: str, value: str):
    """Set a configuration value and save it.

    Only the stored file is updated; environment overrides and --network are
    not written back.
    """
    if key not in StakingConfig.model_fields:
        return _fail(f"Unknown setting {key!r}. Valid settings: {', '.join(StakingConfig.model_fields)}")
    try:
        config = load_config(apply_env=False)
        data = config.model_dump()
        data[key] = value
        if key == "network":
            # Endpoint settings follow the new network preset
            data["rpc_url"] = None
            data["chain_id"] = None
        config = StakingConfig(**data)
    except (ConfigError, ValueError) as e:
        return _fail(f"Invalid value for {key}: {e}")
    path = save_config(config)
    click.echo(f"Saved {key} to {path}")


@cli.command()
@click.option('--address', help='Address to inspect instead of the wallet address')
@click.pass_context
def balance(ctx: click.Context, address: Optional[str]):
    """Show token balance, allowance and staked totals."""
    async def action(controller: StakingController):
        snapshot = controller.reader.snapshot
        decimals = controller.config.token_decimals
        click.echo(f"\nAccount: {controller.account}")
        click.echo("-" * 60)
        for label, value in (
            ("Token Balance", snapshot.token_balance),
            ("Allowance", snapshot.allowance),
        ):
            click.echo(f"{label + ':':<24}{_amount(value, decimals) if value is not None else 'unavailable'}")
        click.echo(f"{'Total Staked (all):':<24}{_amount(controller.total_staked_all, decimals)}")
        click.echo(f"{'Total Staked (active):':<24}{_amount(controller.total_staked_active, decimals)}")
        if snapshot.ledger_token_balance is not None:
            click.echo(f"{'Contract Balance:':<24}{_amount(snapshot.ledger_token_balance, decimals)}")
        for field, error in controller.reader.errors.items():
            logger.error(f"Could not read {field}: {error}")

    _run(ctx, action, address=address, require_account=True)


@cli.command()
@click.option('--address', help='Address to inspect instead of the wallet address')
@click.option('--all', 'show_all', is_flag=True, help='Include withdrawn stakes')
@click.pass_context
def stakes(ctx: click.Context, address: Optional[str], show_all: bool):
    """List stakes with status and projected rewards."""
    async def action(controller: StakingController):
        decimals = controller.config.token_decimals
        if controller.reader.snapshot.user_stakes is None:
            return _fail(f"Could not read stakes: {controller.reader.errors.get('user_stakes')}")
        views = controller.stake_views(include_withdrawn=show_all)
        if not views:
            click.echo("No stakes found")
            return

        click.echo(f"\nStakes for {controller.account}:")
        click.echo("-" * 100)
        click.echo(f"{'#':<4}{'Amount':<18}{'Lock':<6}{'Multiplier':<12}{'Ends':<18}{'Status':<20}{'Total at maturity':<22}")
        click.echo("-" * 100)
        for view in views:
            ends = datetime.fromtimestamp(view.stake.end_time).strftime('%Y-%m-%d %H:%M')
            click.echo(
                f"{view.index:<4}"
                f"{format_units(view.stake.amount, decimals):<18}"
                f"{view.stake.lock_period:<6}"
                f"{str(multiplier_for(view.stake.lock_period)) + 'x':<12}"
                f"{ends:<18}"
                f"{view.status.value:<20}"
                f"{format_units(view.projected_total, decimals):<22}"
            )

        report = controller.check_contract_balance()
        if report is not None and not report.sufficient:
            logger.warning(
                f"Contract balance {_amount(report.ledger_balance, decimals)} does not cover "
                f"{_amount(report.total_obligation, decimals)} owed on your active stakes"
            )

    _run(ctx, action, address=address, require_account=True)


@cli.command()
@click.argument('amount')
@click.option('--yes', '-y', is_flag=True, help='Sign without asking for confirmation')
@click.pass_context
def approve(ctx: click.Context, amount: str, yes: bool):
    """Approve the staking contract to spend AMOUNT tokens."""
    async def action(controller: StakingController):
        state = await controller.orchestrator.approve(amount)
        if not _report(state, f"Approved {amount} {SYMBOL}"):
            return _fail("Approval did not complete")

    _run(ctx, action, yes=yes, require_account=True)


@cli.command(name="stake")
@click.argument('amount')
@click.option('--lock-period', '-l', type=click.IntRange(0, 2), default=0, show_default=True,
              help='Lock period: 0, 1 or 2')
@click.option('--approve', 'with_approve', is_flag=True, help='Approve AMOUNT first')
@click.option('--yes', '-y', is_flag=True, help='Sign without asking for confirmation')
@click.pass_context
def stake_cmd(ctx: click.Context, amount: str, lock_period: int, with_approve: bool, yes: bool):
    """Stake AMOUNT tokens."""
    async def action(controller: StakingController):
        orchestrator = controller.orchestrator
        if with_approve:
            state = await orchestrator.approve(amount)
            if not _report(state, f"Approved {amount} {SYMBOL}"):
                return _fail("Approval did not complete")

        multiplier = multiplier_for(lock_period)
        logger.info(f"Lock period {lock_period} earns {multiplier}x at maturity")
        state = await orchestrator.stake(amount, lock_period)
        if not _report(state, f"Staked {amount} {SYMBOL}"):
            return _fail("Stake did not complete")

    _run(ctx, action, yes=yes, require_account=True)


@cli.command()
@click.argument('index', type=int)
@click.option('--yes', '-y', is_flag=True, help='Sign without asking for confirmation')
@click.pass_context
def withdraw(ctx: click.Context, index: int, yes: bool):
    """Withdraw matured stake INDEX with its reward."""
    async def action(controller: StakingController):
        state = await controller.orchestrator.withdraw(index)
        if not _report(state, f"Withdrew stake #{index}"):
            return _fail("Withdrawal did not complete")

    _run(ctx, action, yes=yes, require_account=True)


@cli.command(name="emergency-withdraw")
@click.argument('index', type=int)
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompts')
@click.pass_context
def emergency_withdraw(ctx: click.Context, index: int, yes: bool):
    """Withdraw stake INDEX before maturity, paying the early withdrawal penalty."""
    async def action(controller: StakingController):
        stake = controller.reader.snapshot.stake_at(index)
        if stake is None:
            return _fail(f"No stake at index {index}")
        decimals = controller.config.token_decimals
        projection = emergency_projection(stake.amount, controller.config.emergency_penalty_bps)

        click.echo(f"\nEmergency withdrawal of stake #{index} (estimate):")
        click.echo(f"Original Amount: {_amount(projection.original_amount, decimals)}")
        click.echo(f"Penalty ({projection.penalty_bps / 100:g}%): {_amount(projection.penalty_amount, decimals)}")
        click.echo(f"You Receive: {_amount(projection.withdrawal_amount, decimals)}")
        click.echo("The contract applies the actual penalty.")
        if not yes and not click.confirm("Continue with emergency withdrawal?"):
            click.echo("Cancelled")
            return

        state = await controller.orchestrator.emergency_withdraw(index)
        if not _report(state, f"Emergency withdrew stake #{index}"):
            return _fail("Emergency withdrawal did not complete")

    _run(ctx, action, yes=yes, require_account=True)


@cli.command(name="check-contract")
@click.argument('users', nargs=-1)
@click.pass_context
def check_contract_cmd(ctx: click.Context, users: Sequence[str]):
    """Check contract configuration and whether it can pay USERS' active stakes."""
    async def action(controller: StakingController):
        report = await check_contract(controller.ledger, users)
        decimals = report.token_decimals if report.token_decimals is not None else controller.config.token_decimals
        symbol = report.token_symbol or SYMBOL

        def fmt(value):
            return f"{format_units(value, decimals)} {symbol}" if value is not None else "unavailable"

        click.echo("\n=== Contract Status Check ===\n")
        click.echo(f"Staking Contract: {report.staking_address}")
        click.echo(f"Token: {report.token_symbol} ({report.token_decimals} decimals)")
        click.echo(f"Contract Token Balance: {fmt(report.ledger_balance)}")
        click.echo(f"Total Distributed Rewards: {fmt(report.total_distributed)}")
        for tier in report.lock_tiers:
            click.echo(
                f"Period {tier.index}: {tier.duration_seconds} seconds, "
                f"Multiplier: {format_units(tier.multiplier, decimals)}x"
            )
        click.echo(f"Treasury Wallet: {report.treasury_wallet}")
        click.echo(f"Treasury Balance: {fmt(report.treasury_balance)}")

        for user, user_stakes in report.user_stakes.items():
            click.echo(f"\nStakes for {user}: {len(user_stakes)}")
            for index, stake in enumerate(user_stakes):
                click.echo(
                    f"  #{index}: {fmt(stake.amount)} lock={stake.lock_period} active={stake.active} "
                    f"contract payout={fmt(ledger_payout(stake, decimals))}"
                )

        if report.sufficiency is not None:
            sufficiency = report.sufficiency
            click.echo("\nActive stake obligations:")
            click.echo(f"Principal: {fmt(sufficiency.total_principal)}")
            click.echo(f"Rewards: {fmt(sufficiency.total_rewards)}")
            click.echo(f"Total: {fmt(sufficiency.total_obligation)}")
            click.echo(f"Contract payout (stored multipliers): {fmt(report.total_ledger_payout)}")
            click.echo(f"Difference: {'' if sufficiency.surplus >= 0 else '-'}{fmt(abs(sufficiency.surplus))}")
            click.echo(f"Has enough balance: {sufficiency.sufficient}")

        for section, error in report.errors.items():
            logger.error(f"{section}: {error}")
        if not report.ok:
            return _fail("Contract check found problems")

    _run(ctx, action)


@cli.command()
@click.option('--address', help='Address to watch instead of the wallet address')
@click.pass_context
def watch(ctx: click.Context, address: Optional[str]):
    """Poll stakes and balances, report matured stakes and withdrawal events."""
    def on_matured(index, stake):
        click.echo(f"Stake #{index} is ready to withdraw")

    def on_change(field, old, new):
        # Initial load is not a change worth reporting
        if field == USER_STAKES and old is not None:
            active = sum(1 for stake in new if stake.active)
            click.echo(f"Stakes updated: {active} active of {len(new)}")

    async def action(controller: StakingController):
        await controller.start()
        click.echo(f"Watching {controller.account} (Ctrl+C to stop)")
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await controller.stop()

    try:
        _run(ctx, action, address=address, require_account=True, on_matured=on_matured, on_change=on_change)
    except KeyboardInterrupt:
        click.echo("Stopped")


if __name__ == "__main__":
    cli()
