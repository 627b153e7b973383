"""Unit tests for the signing wallet."""
import json

import pytest
from eth_account import Account
from unittest.mock import MagicMock

from mini_staking.core.config import StakingConfig
from mini_staking.core.errors import ConfigError, UserRejectedError
from mini_staking.core.wallet import StakingWallet

PRIVATE_KEY = "0x" + "11" * 32
TX = {
    "to": "0x3333333333333333333333333333333333333333",
    "value": 0,
    "gas": 100000,
    "maxFeePerGas": 2000000000,
    "maxPriorityFeePerGas": 1000000000,
    "nonce": 0,
    "chainId": 84532,
    "data": "0x",
}


@pytest.fixture
def account():
    return Account.from_key(PRIVATE_KEY)


def test_wallet_from_environment(config_dir, monkeypatch, account):
    """Test loading the key from the environment."""
    monkeypatch.setenv("MINI_STAKING_PRIVATE_KEY", PRIVATE_KEY)
    wallet = StakingWallet.from_config(StakingConfig())
    assert wallet.is_logged_in()
    assert wallet.address == account.address


def test_invalid_private_key(config_dir, monkeypatch):
    monkeypatch.setenv("MINI_STAKING_PRIVATE_KEY", "0x1234")
    with pytest.raises(ConfigError):
        StakingWallet.from_config(StakingConfig())


def test_read_only_wallet(config_dir):
    """Test wallet without a key."""
    wallet = StakingWallet.from_config(StakingConfig())
    assert not wallet.is_logged_in()
    assert wallet.address is None
    with pytest.raises(ConfigError):
        wallet.sign_transaction(TX)


def test_wallet_from_keystore(config_dir, monkeypatch, account):
    keystore = Account.encrypt(PRIVATE_KEY, "secret", kdf="pbkdf2", iterations=2)
    path = config_dir / "key.json"
    path.write_text(json.dumps(keystore))
    config = StakingConfig(keystore_path=str(path))

    monkeypatch.setenv("MINI_STAKING_KEYSTORE_PASSWORD", "secret")
    assert StakingWallet.from_config(config).address == account.address

    monkeypatch.delenv("MINI_STAKING_KEYSTORE_PASSWORD")
    prompt = MagicMock(return_value="secret")
    assert StakingWallet.from_config(config, password_prompt=prompt).address == account.address
    prompt.assert_called_once()

    with pytest.raises(ConfigError, match="needs a password"):
        StakingWallet.from_config(config)
    with pytest.raises(ConfigError, match="decrypt"):
        StakingWallet.from_config(config, password_prompt=lambda: "wrong")


def test_missing_keystore(config_dir):
    config = StakingConfig(keystore_path=str(config_dir / "missing.json"))
    with pytest.raises(ConfigError, match="keystore"):
        StakingWallet.from_config(config)


def test_sign_after_confirmation(account):
    confirm = MagicMock(return_value=True)
    wallet = StakingWallet(account, confirm)

    signed = wallet.sign_transaction(TX, "stake")

    confirm.assert_called_once_with("stake")
    assert signed.raw_transaction


def test_declined_signature(account):
    wallet = StakingWallet(account, confirm=lambda description: False)
    with pytest.raises(UserRejectedError, match="user rejected approve"):
        wallet.sign_transaction(TX, "approve")
