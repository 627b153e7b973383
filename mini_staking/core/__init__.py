"""Core staking components."""
from .config import StakingConfig, load_config, save_config
from .controller import StakeView, StakingController
from .errors import (
    ConfigError,
    ConfirmationTimeout,
    FlowBusy,
    StakeValidationError,
    StakingError,
    TransactionFailed,
    UserRejectedError,
    WithdrawalInProgress,
)
from .events import DebugEventObserver, WithdrawDebugEvent
from .health import HealthReport, check_contract
from .ledger import StakingLedger, TxReceipt, Web3Ledger
from .orchestrator import FlowStage, TransactionOrchestrator, TxStatus, WithdrawalKind, WithdrawalRequest
from .reader import ReadModel, StakeReader
from .scheduler import ReadinessScheduler
from .stake import Stake, StakeStatus
from .wallet import StakingWallet
