"""Integration tests for the web3 staking ledger."""
import asyncio
import threading

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from web3 import AsyncHTTPProvider
from web3.exceptions import TimeExhausted

from mini_staking.core.errors import ConfigError, ConfirmationTimeout
from mini_staking.core.ledger import Web3Ledger
from mini_staking.core.stake import Stake
from mini_staking.core.wallet import StakingWallet
from conftest import ACCOUNT, STAKING_ADDRESS, TOKEN, TOKEN_ADDRESS

TX_HASH = bytes.fromhex("ab" * 32)


@pytest.fixture
def mock_wallet():
    wallet = MagicMock(spec=StakingWallet)
    wallet.address = ACCOUNT
    wallet.sign_transaction.return_value = MagicMock(raw_transaction=b"signed")
    return wallet


@pytest.fixture
def mock_w3():
    w3 = MagicMock()
    w3.is_connected = AsyncMock(return_value=True)
    w3.eth.get_transaction_count = AsyncMock(return_value=7)
    w3.eth.send_raw_transaction = AsyncMock(return_value=TX_HASH)
    return w3


@pytest.fixture
def web3_ledger(config, mock_wallet, mock_w3):
    return Web3Ledger(config, mock_wallet, w3=mock_w3)


def _call_returning(value):
    return MagicMock(call=AsyncMock(return_value=value))


def test_contracts_use_configured_addresses(web3_ledger, mock_w3):
    assert web3_ledger.staking_address == STAKING_ADDRESS
    assert web3_ledger.token_address == TOKEN_ADDRESS
    addresses = [call.kwargs["address"] for call in mock_w3.eth.contract.call_args_list]
    assert addresses == [TOKEN_ADDRESS, STAKING_ADDRESS]


def test_missing_contract_addresses(mock_wallet, mock_w3):
    from mini_staking.core.config import StakingConfig
    with pytest.raises(ConfigError):
        Web3Ledger(StakingConfig(), mock_wallet, w3=mock_w3)


@pytest.mark.asyncio
async def test_reads(web3_ledger):
    web3_ledger.token.functions.balanceOf.return_value = _call_returning(5 * TOKEN)
    web3_ledger.token.functions.allowance.return_value = _call_returning(2 * TOKEN)
    web3_ledger.staking.functions.totalDistributed.return_value = _call_returning(TOKEN)

    assert await web3_ledger.balance_of(ACCOUNT) == 5 * TOKEN
    assert await web3_ledger.allowance(ACCOUNT, STAKING_ADDRESS) == 2 * TOKEN
    assert await web3_ledger.total_distributed() == TOKEN
    web3_ledger.token.functions.allowance.assert_called_once_with(ACCOUNT, STAKING_ADDRESS)


@pytest.mark.asyncio
async def test_get_user_staking_info_decodes_tuples(web3_ledger):
    raw = [
        (100 * TOKEN, 1000, 2000, 1, 125 * TOKEN // 100, True),
        (5 * TOKEN, 1000, 1500, 0, 110 * TOKEN // 100, False),
    ]
    web3_ledger.staking.functions.getUserStakingInfo.return_value = _call_returning(raw)

    stakes = await web3_ledger.get_user_staking_info(ACCOUNT)

    assert all(isinstance(stake, Stake) for stake in stakes)
    assert stakes[0].amount == 100 * TOKEN
    assert stakes[1].active is False


@pytest.mark.asyncio
async def test_stake_builds_signs_and_sends(web3_ledger, mock_wallet, mock_w3, config):
    function = MagicMock()
    function.build_transaction = AsyncMock(return_value={"nonce": 7})
    web3_ledger.staking.functions.stake.return_value = function

    tx_hash = await web3_ledger.stake(100 * TOKEN, 1)

    assert tx_hash == "0x" + "ab" * 32
    web3_ledger.staking.functions.stake.assert_called_once_with(100 * TOKEN, 1)
    mock_w3.eth.get_transaction_count.assert_awaited_once_with(ACCOUNT, "pending")
    function.build_transaction.assert_awaited_once_with({
        "from": ACCOUNT,
        "nonce": 7,
        "chainId": config.chain_id,
    })
    mock_wallet.sign_transaction.assert_called_once_with({"nonce": 7}, "stake")
    mock_w3.eth.send_raw_transaction.assert_awaited_once_with(b"signed")


@pytest.mark.asyncio
async def test_signing_prompt_does_not_block_event_loop(web3_ledger, mock_wallet):
    function = MagicMock()
    function.build_transaction = AsyncMock(return_value={"nonce": 7})
    web3_ledger.staking.functions.withdraw.return_value = function
    answered = threading.Event()

    def slow_confirm(tx, description):
        # Stands in for a terminal prompt waiting on the user
        assert answered.wait(timeout=5)
        return MagicMock(raw_transaction=b"signed")

    mock_wallet.sign_transaction.side_effect = slow_confirm

    send = asyncio.create_task(web3_ledger.withdraw(0))
    await asyncio.sleep(0.01)
    assert not send.done()
    answered.set()

    assert await send == "0x" + "ab" * 32
    mock_wallet.sign_transaction.assert_called_once_with({"nonce": 7}, "withdraw")

@pytest.mark.asyncio
async def test_write_without_key(web3_ledger, mock_wallet, mock_w3):
    mock_wallet.address = None
    with pytest.raises(ConfigError):
        await web3_ledger.withdraw(0)
    mock_w3.eth.send_raw_transaction.assert_not_awaited()


@pytest.mark.asyncio
async def test_wait_for_receipt(web3_ledger, mock_w3):
    mock_w3.eth.wait_for_transaction_receipt = AsyncMock(return_value={"status": 1, "blockNumber": 42})

    receipt = await web3_ledger.wait_for_receipt("0x01", timeout=3)

    assert receipt.succeeded
    assert receipt.block_number == 42
    mock_w3.eth.wait_for_transaction_receipt.assert_awaited_once_with("0x01", timeout=3)


@pytest.mark.asyncio
async def test_wait_for_receipt_timeout(web3_ledger, mock_w3):
    mock_w3.eth.wait_for_transaction_receipt = AsyncMock(side_effect=TimeExhausted("too slow"))

    with pytest.raises(ConfirmationTimeout) as exc_info:
        await web3_ledger.wait_for_receipt("0x01", timeout=3)
    assert exc_info.value.tx_hash == "0x01"


@pytest.mark.asyncio
async def test_withdraw_debug_logs(web3_ledger):
    args = {
        "user": ACCOUNT,
        "stakeId": 0,
        "stakeAmount": 100 * TOKEN,
        "rewardMultiplier": 125 * TOKEN // 100,
        "calculatedReward": 25 * TOKEN,
        "totalPayout": 125 * TOKEN,
        "contractBalance": 1_000 * TOKEN,
    }
    get_logs = AsyncMock(return_value=[{"args": args, "blockNumber": 12, "transactionHash": TX_HASH}])
    web3_ledger.staking.events.WithdrawDebug.get_logs = get_logs

    logs = await web3_ledger.get_withdraw_debug_logs(10, 20, ACCOUNT)

    assert logs == [dict(args, blockNumber=12, transactionHash="0x" + "ab" * 32)]
    get_logs.assert_awaited_once_with(from_block=10, to_block=20, argument_filters={"user": ACCOUNT})


@pytest.mark.asyncio
async def test_connect_owns_http_session(web3_ledger, mock_w3):
    mock_w3.provider = MagicMock(spec=AsyncHTTPProvider)
    mock_w3.provider.cache_async_session = AsyncMock()
    session = MagicMock(close=AsyncMock())

    with patch("mini_staking.core.ledger.aiohttp.ClientSession", return_value=session):
        async with web3_ledger:
            mock_w3.provider.cache_async_session.assert_awaited_once_with(session)

    session.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_connect_fails_when_unreachable(web3_ledger, mock_w3):
    mock_w3.is_connected = AsyncMock(return_value=False)
    with pytest.raises(ConnectionError):
        await web3_ledger.connect()
