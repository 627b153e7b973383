"""Local signing wallet for the staking client."""
import os
import json
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from eth_account import Account
from loguru import logger

from .config import StakingConfig
from .errors import ConfigError, UserRejectedError

PRIVATE_KEY_ENV = "MINI_STAKING_PRIVATE_KEY"
KEYSTORE_PASSWORD_ENV = "MINI_STAKING_KEYSTORE_PASSWORD"

# Called with a short description of the transaction; False means declined.
ConfirmCallback = Callable[[str], bool]


class StakingWallet:
    """Holds the signing key and asks the user before every signature."""

    def __init__(self, account=None, confirm: Optional[ConfirmCallback] = None):
        """Initialize wallet.

        Args:
            account: eth-account LocalAccount, or None for a read-only wallet
            confirm: Optional callback asked before signing
        """
        self._account = account
        self.confirm = confirm

    @classmethod
    def from_config(
        cls,
        config: StakingConfig,
        confirm: Optional[ConfirmCallback] = None,
        password_prompt: Optional[Callable[[], str]] = None,
    ) -> "StakingWallet":
        """Load the signing key from the environment or the configured keystore.

        Without either, the wallet is read-only.
        """
        private_key = os.getenv(PRIVATE_KEY_ENV)
        if private_key:
            try:
                return cls(Account.from_key(private_key), confirm)
            except Exception as e:
                raise ConfigError(f"{PRIVATE_KEY_ENV} is not a valid private key: {e}")

        if config.keystore_path:
            return cls(_decrypt_keystore(Path(config.keystore_path), password_prompt), confirm)

        logger.debug("No signing key configured; wallet is read-only")
        return cls(None, confirm)

    @property
    def address(self) -> Optional[str]:
        return self._account.address if self._account else None

    def is_logged_in(self) -> bool:
        """Check if a signing key is loaded."""
        return self._account is not None

    def sign_transaction(self, tx: Dict[str, Any], description: str = "transaction"):
        """Sign a transaction after the user confirms it.

        Args:
            tx: Transaction dict as produced by build_transaction
            description: What is being signed, shown to the user

        Returns:
            Signed transaction

        Raises:
            UserRejectedError: If the user declines
            ConfigError: If no key is loaded
        """
        if self._account is None:
            raise ConfigError("No signing key loaded. Set MINI_STAKING_PRIVATE_KEY or keystore_path.")
        if self.confirm is not None and not self.confirm(description):
            logger.info(f"User rejected signing {description}")
            raise UserRejectedError(f"user rejected {description}")
        return self._account.sign_transaction(tx)


def _decrypt_keystore(path: Path, password_prompt: Optional[Callable[[], str]]):
    try:
        with open(path) as f:
            keystore = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read keystore {path}: {e}")

    password = os.getenv(KEYSTORE_PASSWORD_ENV)
    if password is None:
        if password_prompt is None:
            raise ConfigError(f"Keystore {path} needs a password; set {KEYSTORE_PASSWORD_ENV}")
        password = password_prompt()

    try:
        private_key = Account.decrypt(keystore, password)
    except ValueError as e:
        raise ConfigError(f"Failed to decrypt keystore {path}: {e}")
    return Account.from_key(private_key)
