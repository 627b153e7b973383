"""Remote access to the staking contract and its token."""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import TimeExhausted

from .abi import ERC20_ABI, STAKING_ABI
from .config import StakingConfig
from .errors import ConfigError, ConfirmationTimeout
from .stake import Stake
from .wallet import StakingWallet

RPC_TIMEOUT = 30


@dataclass(frozen=True)
class TxReceipt:
    """Outcome of a mined transaction."""
    tx_hash: str
    status: int
    block_number: int

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class StakingLedger(ABC):
    """Read, write and event surface of the staking ledger.

    Write methods return the transaction hash as soon as the transaction is
    broadcast; confirmation is a separate `wait_for_receipt` call.
    """

    staking_address: str
    token_address: str

    # Reads

    @abstractmethod
    async def balance_of(self, address: str) -> int: ...

    @abstractmethod
    async def allowance(self, owner: str, spender: str) -> int: ...

    @abstractmethod
    async def get_user_staking_info(self, address: str) -> List[Stake]: ...

    @abstractmethod
    async def total_distributed(self) -> int: ...

    @abstractmethod
    async def treasury_wallet(self) -> str: ...

    @abstractmethod
    async def lock_period(self, index: int) -> int: ...

    @abstractmethod
    async def multiplier(self, index: int) -> int: ...

    @abstractmethod
    async def token_symbol(self) -> str: ...

    @abstractmethod
    async def token_decimals(self) -> int: ...

    @abstractmethod
    async def block_number(self) -> int: ...

    # Writes

    @abstractmethod
    async def approve(self, spender: str, amount: int) -> str: ...

    @abstractmethod
    async def stake(self, amount: int, lock_period: int) -> str: ...

    @abstractmethod
    async def withdraw(self, stake_index: int) -> str: ...

    @abstractmethod
    async def emergency_withdraw(self, stake_index: int) -> str: ...

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        """Wait for a receipt; raises ConfirmationTimeout when none arrives in time."""

    # Events

    @abstractmethod
    async def get_withdraw_debug_logs(
        self, from_block: int, to_block: int, user: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Raw WithdrawDebug payloads (camelCase keys) in a block range."""


class Web3Ledger(StakingLedger):
    """StakingLedger over JSON-RPC using web3.py."""

    def __init__(self, config: StakingConfig, wallet: StakingWallet, w3: Optional[AsyncWeb3] = None):
        """Initialize contract handles.

        Args:
            config: Client configuration; both contract addresses are required
            wallet: Wallet used to sign writes
            w3: Preconfigured AsyncWeb3 instance, mostly for tests
        """
        config.require_contracts()
        self.config = config
        self.wallet = wallet
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(config.rpc_url))
        self.staking_address = AsyncWeb3.to_checksum_address(config.staking_contract_address)
        self.token_address = AsyncWeb3.to_checksum_address(config.token_address)
        self.token = self.w3.eth.contract(address=self.token_address, abi=ERC20_ABI)
        self.staking = self.w3.eth.contract(address=self.staking_address, abi=STAKING_ABI)
        self._session: Optional[aiohttp.ClientSession] = None

    async def connect(self) -> None:
        """Open the RPC session and check the endpoint answers."""
        if self._session is None and isinstance(self.w3.provider, AsyncHTTPProvider):
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=RPC_TIMEOUT))
            await self.w3.provider.cache_async_session(self._session)
        if not await self.w3.is_connected():
            raise ConnectionError(f"Unable to connect to RPC endpoint {self.config.rpc_url}")
        logger.debug(f"Connected to {self.config.network} via {self.config.rpc_url}")

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "Web3Ledger":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def balance_of(self, address: str) -> int:
        return await self.token.functions.balanceOf(AsyncWeb3.to_checksum_address(address)).call()

    async def allowance(self, owner: str, spender: str) -> int:
        return await self.token.functions.allowance(
            AsyncWeb3.to_checksum_address(owner),
            AsyncWeb3.to_checksum_address(spender),
        ).call()

    async def get_user_staking_info(self, address: str) -> List[Stake]:
        raw = await self.staking.functions.getUserStakingInfo(AsyncWeb3.to_checksum_address(address)).call()
        return [Stake.from_tuple(entry) for entry in raw]

    async def total_distributed(self) -> int:
        return await self.staking.functions.totalDistributed().call()

    async def treasury_wallet(self) -> str:
        return await self.staking.functions.treasuryWallet().call()

    async def lock_period(self, index: int) -> int:
        return await self.staking.functions.lockPeriods(index).call()

    async def multiplier(self, index: int) -> int:
        return await self.staking.functions.multipliers(index).call()

    async def token_symbol(self) -> str:
        return await self.token.functions.symbol().call()

    async def token_decimals(self) -> int:
        return await self.token.functions.decimals().call()

    async def block_number(self) -> int:
        return await self.w3.eth.block_number

    async def approve(self, spender: str, amount: int) -> str:
        function = self.token.functions.approve(AsyncWeb3.to_checksum_address(spender), amount)
        return await self._send(function, "approve")

    async def stake(self, amount: int, lock_period: int) -> str:
        return await self._send(self.staking.functions.stake(amount, lock_period), "stake")

    async def withdraw(self, stake_index: int) -> str:
        return await self._send(self.staking.functions.withdraw(stake_index), "withdraw")

    async def emergency_withdraw(self, stake_index: int) -> str:
        return await self._send(self.staking.functions.emergencyWithdraw(stake_index), "emergencyWithdraw")

    async def _send(self, function, description: str) -> str:
        sender = self.wallet.address
        if sender is None:
            raise ConfigError("No signing key loaded. Set MINI_STAKING_PRIVATE_KEY or keystore_path.")
        nonce = await self.w3.eth.get_transaction_count(sender, "pending")
        tx = await function.build_transaction({
            "from": sender,
            "nonce": nonce,
            "chainId": self.config.chain_id,
        })
        # Signing may prompt on the terminal; keep the event loop running meanwhile
        signed = await asyncio.to_thread(self.wallet.sign_transaction, tx, description)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        tx_hash = AsyncWeb3.to_hex(tx_hash)
        logger.debug(f"Broadcast {description}: {tx_hash}")
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as e:
            raise ConfirmationTimeout(f"No receipt for {tx_hash} after {timeout}s: {e}", tx_hash)
        return TxReceipt(
            tx_hash=tx_hash,
            status=int(receipt["status"]),
            block_number=int(receipt["blockNumber"]),
        )

    async def get_withdraw_debug_logs(
        self, from_block: int, to_block: int, user: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        filters = {"user": AsyncWeb3.to_checksum_address(user)} if user else None
        logs = await self.staking.events.WithdrawDebug.get_logs(
            from_block=from_block,
            to_block=to_block,
            argument_filters=filters,
        )
        return [
            dict(
                log["args"],
                blockNumber=log["blockNumber"],
                transactionHash=AsyncWeb3.to_hex(log["transactionHash"]),
            )
            for log in logs
        ]
