"""
Content-to-proof state machine.

    Idle -> ContentSubmitted -> Analyzed -> WalletConnected -> ProofPublished
    any failed step -> Failed(reason); Failed -> ContentSubmitted via submit()

The controller owns the canonical AnalysisRecord and its ProofFingerprint.
The fingerprint is computed once, right after analysis, and that same value
is what gets published. One operation may be in flight at a time; results of
an operation abandoned through ``cancel()`` are discarded.
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple, TypeVar

import structlog

from proof_anchor.core.errors import (
    AnalysisUnavailable, InputInvalid, InvalidStateTransition, NetworkMismatch, NoWalletAvailable,
    OperationAbandoned, ProofWorkflowError, RegistryUnreachable
)
from proof_anchor.core.utils import new_session_id
from proof_anchor.models.content import AnalysisOptions, AnalysisRecord, ContentItem
from proof_anchor.models.proof import ProofFingerprint, ProofReceipt, WalletIdentity
from proof_anchor.services.analysis import AnalysisGateway
from proof_anchor.services.fingerprint import ProofHasher
from proof_anchor.services.publisher import ProofPublisher
from proof_anchor.services.wallet import WalletConnector

logger = structlog.get_logger()

__all__ = ["WorkflowState", "WorkflowController"]

T = TypeVar("T")

# Failures outside the error taxonomy are reported as the stage's own error
STAGE_ERRORS = {
    "analysis": AnalysisUnavailable,
    "wallet": NoWalletAvailable,
    "publish": RegistryUnreachable,
}


class WorkflowState(str, Enum):
    """Enumeration of workflow states."""
    IDLE = "idle"
    CONTENT_SUBMITTED = "content_submitted"
    ANALYZED = "analyzed"
    WALLET_CONNECTED = "wallet_connected"
    PROOF_PUBLISHED = "proof_published"
    FAILED = "failed"


class WorkflowController:
    """Drives one session's content through analysis, fingerprinting, wallet connection and publication."""

    def __init__(self,
                 gateway: AnalysisGateway,
                 wallet: WalletConnector,
                 publisher: ProofPublisher,
                 hasher: Optional[ProofHasher] = None):
        self.gateway = gateway
        self.wallet = wallet
        self.publisher = publisher
        self.hasher = hasher or ProofHasher()
        self.session_id = new_session_id()
        self._generation = 0
        self._in_flight: Optional[str] = None
        self._clear()

    def _clear(self) -> None:
        self.state = WorkflowState.IDLE
        self.item: Optional[ContentItem] = None
        self._record: Optional[AnalysisRecord] = None
        self.fingerprint: Optional[ProofFingerprint] = None
        self.identity: Optional[WalletIdentity] = None
        self.receipt: Optional[ProofReceipt] = None
        self.failure: Optional[ProofWorkflowError] = None

    @property
    def failure_reason(self) -> Optional[str]:
        return self.failure.code if self.failure else None

    @property
    def busy(self) -> bool:
        return self._in_flight is not None

    @property
    def record(self) -> Optional[AnalysisRecord]:
        """Copy of the stored record; the fingerprinted original is never handed out."""
        return self._record.model_copy(deep=True) if self._record is not None else None

    # Transitions

    def submit(self, item: ContentItem) -> None:
        """Idle|Failed -> ContentSubmitted. Empty content moves to Failed(InputInvalid)."""
        self._require("submit", (WorkflowState.IDLE, WorkflowState.FAILED))
        self._clear()

        if item is None or item.is_empty:
            self._fail(InputInvalid("No content was provided", stage="submit",
                                    hint="Provide a non-empty file or text."))
            raise self.failure

        self.item = item
        self.state = WorkflowState.CONTENT_SUBMITTED
        logger.info("Content submitted", session_id=self.session_id, kind=item.kind.value)

    async def analyze(self, options: Optional[AnalysisOptions] = None) -> AnalysisRecord:
        """ContentSubmitted -> Analyzed. Stores the record and its fingerprint."""
        item = self.item

        async def run() -> Tuple[AnalysisRecord, ProofFingerprint]:
            record = await self.gateway.analyze(item, options)
            try:
                return record, self.hasher.fingerprint(record)
            except ValueError as e:
                raise AnalysisUnavailable(f"Analysis record cannot be fingerprinted: {e}") from e

        def apply(result: Tuple[AnalysisRecord, ProofFingerprint]) -> None:
            self._record, self.fingerprint = result
            self.item = None
            self.state = WorkflowState.ANALYZED
            logger.info("Content analyzed", session_id=self.session_id,
                        fingerprint=self.fingerprint.value)

        await self._transition("analysis", (WorkflowState.CONTENT_SUBMITTED,), run, apply)
        return self.record

    async def connect_wallet(self) -> WalletIdentity:
        """Analyzed -> WalletConnected."""
        def apply(identity: WalletIdentity) -> None:
            self.identity = identity
            self.state = WorkflowState.WALLET_CONNECTED

        return await self._transition("wallet", (WorkflowState.ANALYZED,), self.wallet.connect, apply)

    async def publish(self) -> ProofReceipt:
        """WalletConnected -> ProofPublished, using the fingerprint stored at analysis time."""
        fingerprint = self.fingerprint
        identity = self.identity

        async def run() -> ProofReceipt:
            self._check_identity(identity)
            return await self.publisher.publish(fingerprint, identity)

        def apply(receipt: ProofReceipt) -> None:
            self.receipt = receipt
            self.state = WorkflowState.PROOF_PUBLISHED
            logger.info("Proof published for session", session_id=self.session_id,
                        transaction_id=receipt.transaction_id)

        return await self._transition("publish", (WorkflowState.WALLET_CONNECTED,), run, apply)

    async def prove(self, item: ContentItem, options: Optional[AnalysisOptions] = None) -> ProofReceipt:
        """Run the whole workflow for one item: submit, analyze, connect, publish."""
        self.submit(item)
        await self.analyze(options)
        await self.connect_wallet()
        return await self.publish()

    def reset(self) -> None:
        """Return to Idle from any state with no operation in flight."""
        if self._in_flight is not None:
            raise InvalidStateTransition(f"Cannot reset while {self._in_flight} is in progress")
        self._clear()

    def cancel(self) -> None:
        """Abandon the in-flight operation; its eventual result will be discarded."""
        if self._in_flight is None:
            return
        logger.info("Operation abandoned", session_id=self.session_id, stage=self._in_flight)
        self._generation += 1
        self._in_flight = None

    def snapshot(self) -> Dict[str, Any]:
        """Read-only view for presentation layers."""
        return {
            "sessionId": self.session_id,
            "state": self.state.value,
            "busy": self.busy,
            "analysis": self._record.to_public() if self._record is not None else None,
            "proofHash": self.fingerprint.value if self.fingerprint else None,
            "wallet": self.identity.model_dump(by_alias=True, mode="json") if self.identity else None,
            "receipt": self.receipt.to_public() if self.receipt else None,
            "failure": self.failure.to_dict() if self.failure else None,
        }

    # Internals

    def _check_identity(self, identity: WalletIdentity) -> None:
        """Fail if the connector no longer reports the identity captured at connect time."""
        current = self.wallet.identity
        if current == identity:
            return

        active_chain_id = current.chain_id if current is not None else self.wallet.chain_id
        if active_chain_id is not None and active_chain_id != identity.chain_id:
            raise NetworkMismatch(active_chain_id, self.publisher.registry.expected_chain_id,
                                  stage="publish")
        raise NoWalletAvailable("Wallet identity changed after it was connected", stage="publish",
                                hint="Submit the content again and reconnect your wallet.")

    def _require(self, operation: str, allowed: Iterable[WorkflowState]) -> None:
        if self._in_flight is not None:
            raise InvalidStateTransition(
                f"Cannot {operation} while {self._in_flight} is in progress", stage=operation
            )
        allowed = tuple(allowed)
        if self.state not in allowed:
            raise InvalidStateTransition(
                f"Cannot {operation} from state {self.state.value}; "
                f"expected one of {', '.join(s.value for s in allowed)}",
                stage=operation,
                hint="Reset the workflow or submit new content.",
            )

    def _fail(self, error: ProofWorkflowError) -> None:
        self.failure = error
        self.state = WorkflowState.FAILED
        logger.warning("Workflow failed", session_id=self.session_id,
                       stage=error.stage, reason=error.code, error=error.message)

    async def _transition(self,
                          stage: str,
                          allowed: Iterable[WorkflowState],
                          run: Callable[[], Awaitable[T]],
                          apply: Callable[[T], None]) -> T:
        self._require(stage, allowed)
        generation = self._generation
        self._in_flight = stage

        def stale() -> bool:
            return generation != self._generation

        try:
            result = await run()
        except asyncio.CancelledError:
            if not stale():
                self._in_flight = None
            raise
        except ProofWorkflowError as e:
            if stale():
                raise OperationAbandoned(f"{stage} was cancelled; its error was discarded",
                                         stage=stage) from e
            self._in_flight = None
            e.stage = e.stage or stage
            self._fail(e)
            raise
        except Exception as e:
            if stale():
                raise OperationAbandoned(f"{stage} was cancelled; its error was discarded",
                                         stage=stage) from e
            self._in_flight = None
            error_class = STAGE_ERRORS.get(stage, ProofWorkflowError)
            error = error_class(f"Unexpected {stage} failure: {e}", stage=stage)
            self._fail(error)
            raise error from e

        if stale():
            logger.info("Discarding result of abandoned operation",
                        session_id=self.session_id, stage=stage)
            raise OperationAbandoned(f"{stage} was cancelled; its result was discarded", stage=stage)

        self._in_flight = None
        apply(result)
        return result
