from __future__ import annotations

from typing import Any

from lp_exit.common.errors import ExitCancelledError, ExitError


class DiscoveryError(ExitError):
    def __init__(self, message: str, *, protocol: str) -> None:
        super().__init__(message)
        self.protocol = protocol


class TransactionBuildError(ExitError):
    def __init__(self, message: str, *, protocol: str, pool: str | None = None) -> None:
        super().__init__(message)
        self.protocol = protocol
        self.pool = pool


class SignerValidationError(ExitError):
    def __init__(self, message: str, *, unexpected_signers: list[str]) -> None:
        super().__init__(message)
        self.unexpected_signers = unexpected_signers


class SigningError(ExitError):
    pass


class SubmissionError(ExitError):
    pass


class ConfirmationError(ExitError):
    def __init__(self, message: str, *, signature: str, chain_error: Any = None) -> None:
        super().__init__(message)
        self.signature = signature
        self.chain_error = chain_error


class BlockHeightExceededError(ConfirmationError):
    pass


class RunInProgressError(ExitError):
    pass


class StatusTransitionError(ExitError):
    pass


class RpcMethodError(ExitError):
    def __init__(
        self,
        *,
        method: str,
        message: str,
        status: int | None = None,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        super().__init__(message)
        self.method = method
        self.status = status
        self.code = code
        self.data = data


__all__ = [
    "BlockHeightExceededError",
    "ConfirmationError",
    "DiscoveryError",
    "ExitCancelledError",
    "ExitError",
    "RpcMethodError",
    "RunInProgressError",
    "SignerValidationError",
    "SigningError",
    "StatusTransitionError",
    "SubmissionError",
    "TransactionBuildError",
]
