"""
Error taxonomy for the content-to-proof workflow.

Every error carries the workflow stage it came from and a short hint telling
the user what to fix or retry. The API layer renders these as JSON, and the
workflow controller stores them as its failure reason.
"""

from typing import Any, Dict, Optional

__all__ = [
    "ProofWorkflowError",
    "InputInvalid",
    "AnalysisUnavailable",
    "UnsupportedContent",
    "PayloadTooLarge",
    "NoWalletAvailable",
    "UserRejected",
    "ChainNotRegistered",
    "SigningProviderError",
    "SubmissionRejected",
    "NetworkMismatch",
    "RegistryUnreachable",
    "InvalidStateTransition",
    "OperationAbandoned",
]


class ProofWorkflowError(Exception):
    """Base class for all workflow errors."""

    http_status = 500
    default_hint = "Retry the operation or contact support."

    def __init__(self, message: str, stage: Optional[str] = None, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.hint = hint or self.default_hint

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "stage": self.stage,
            "hint": self.hint,
        }

    def __repr__(self) -> str:
        return f"{self.code}({self.message!r}, stage={self.stage!r})"


class InputInvalid(ProofWorkflowError):
    http_status = 400
    default_hint = "Check the submitted content or fields and try again."


class AnalysisUnavailable(ProofWorkflowError):
    default_hint = "The analyzer could not process this content. Try again later."


class UnsupportedContent(AnalysisUnavailable):
    http_status = 415
    default_hint = "Submit a supported image, video or text item."


class PayloadTooLarge(ProofWorkflowError):
    http_status = 413

    def __init__(self, size: int, limit: int, stage: Optional[str] = None):
        super().__init__(
            f"Content size {size} bytes exceeds the {limit} byte limit",
            stage=stage,
            hint=f"Submit content smaller than {limit} bytes.",
        )
        self.size = size
        self.limit = limit


class NoWalletAvailable(ProofWorkflowError):
    default_hint = "Install or unlock a wallet, then connect again."


class UserRejected(ProofWorkflowError):
    default_hint = "Approve the wallet connection request to continue."


class ChainNotRegistered(ProofWorkflowError):
    default_hint = "Add the network to your wallet, then switch again."


class SigningProviderError(ProofWorkflowError):
    """Error reported by the signing provider (EIP-1193 / JSON-RPC style)."""

    USER_REJECTED = 4001
    UNAUTHORIZED = 4100
    UNSUPPORTED_METHOD = 4200
    DISCONNECTED = 4900
    CHAIN_DISCONNECTED = 4901
    UNRECOGNIZED_CHAIN = 4902

    default_hint = "Check your wallet and try again."

    def __init__(self, message: str, rpc_code: Optional[int] = None, stage: Optional[str] = None):
        super().__init__(message, stage=stage)
        self.rpc_code = rpc_code

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["rpc_code"] = self.rpc_code
        return data


class SubmissionRejected(ProofWorkflowError):
    default_hint = "Approve the signature request in your wallet to publish the proof."


class NetworkMismatch(ProofWorkflowError):
    def __init__(self, active_chain_id: int, expected_chain_id: int, stage: Optional[str] = None):
        super().__init__(
            f"Wallet is on chain {active_chain_id} but the registry expects chain {expected_chain_id}",
            stage=stage,
            hint=f"Switch your wallet to chain {expected_chain_id} and start again.",
        )
        self.active_chain_id = active_chain_id
        self.expected_chain_id = expected_chain_id


class RegistryUnreachable(ProofWorkflowError):
    default_hint = "The proof registry is not responding. Try again in a few minutes."


class InvalidStateTransition(ProofWorkflowError):
    http_status = 409
    default_hint = "Wait for the current step to finish, or reset the workflow."


class OperationAbandoned(InvalidStateTransition):
    default_hint = "The operation was cancelled; its result was discarded."
