from .errors import (
    BlockHeightExceededError,
    ConfirmationError,
    DiscoveryError,
    ExitError,
    RpcMethodError,
    RunInProgressError,
    SignerValidationError,
    SigningError,
    StatusTransitionError,
    SubmissionError,
    TransactionBuildError,
)
from .fees import FeeSchedule, PriorityFeeRecommendation, PriorityFeeRecommender, priority_fee_levels
from .orchestrator import ExitConfig, ExitOrchestrator
from .planner import ExitPlan, order_tasks, plan_exit_tasks
from .rpc import LedgerRpcClient
from .signing import (
    KeypairSigner,
    SigningResult,
    WalletSigner,
    assert_only_allowed_unsigned_signers,
    parse_private_key,
    sign_single,
    sign_transactions_adaptive,
    validate_signer_sets,
)
from .types import (
    BuildParams,
    DraftTransaction,
    ExitItem,
    ExitRunOptions,
    ExitTask,
    OrchestratorState,
    PositionCandidate,
    PriorityVariant,
)

__all__ = [
    "BlockHeightExceededError",
    "BuildParams",
    "ConfirmationError",
    "DiscoveryError",
    "DraftTransaction",
    "ExitConfig",
    "ExitError",
    "ExitItem",
    "ExitOrchestrator",
    "ExitPlan",
    "ExitRunOptions",
    "ExitTask",
    "FeeSchedule",
    "KeypairSigner",
    "LedgerRpcClient",
    "OrchestratorState",
    "PositionCandidate",
    "PriorityFeeRecommendation",
    "PriorityFeeRecommender",
    "PriorityVariant",
    "RpcMethodError",
    "RunInProgressError",
    "SignerValidationError",
    "SigningError",
    "SigningResult",
    "StatusTransitionError",
    "SubmissionError",
    "TransactionBuildError",
    "WalletSigner",
    "assert_only_allowed_unsigned_signers",
    "order_tasks",
    "parse_private_key",
    "plan_exit_tasks",
    "priority_fee_levels",
    "sign_single",
    "sign_transactions_adaptive",
    "validate_signer_sets",
]
