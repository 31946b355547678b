import asyncio
from typing import Awaitable, Callable, Optional, TypeVar, Union

import structlog

from proof_anchor import config
from proof_anchor.core.errors import (
    InputInvalid, InvalidStateTransition, NetworkMismatch, RegistryUnreachable,
    SigningProviderError, SubmissionRejected
)
from proof_anchor.models.proof import ProofFingerprint, ProofReceipt, ProofSubmission, WalletIdentity
from proof_anchor.services.registry import ProofRegistry
from proof_anchor.services.wallet import SigningProvider

logger = structlog.get_logger()

__all__ = ["ProofPublisher"]

STAGE = "publish"

T = TypeVar("T")


class ProofPublisher:
    """Turns a fingerprint and a connected identity into a confirmed registry receipt."""

    def __init__(self,
                 registry: ProofRegistry,
                 signer: Optional[SigningProvider] = None,
                 timeout_seconds: float = config.REGISTRY_TIMEOUT_SECONDS,
                 max_attempts: int = config.REGISTRY_MAX_ATTEMPTS,
                 backoff_seconds: float = config.REGISTRY_BACKOFF_SECONDS):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.registry = registry
        self.signer = signer
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    async def publish(self,
                      fingerprint: Union[ProofFingerprint, str],
                      identity: WalletIdentity) -> ProofReceipt:
        """
        Register a fingerprint for the identity's address.

        An existing registration for the same (fingerprint, address) pair is
        returned as-is; the signer is not prompted again.

        Raises:
            InvalidStateTransition: Identity is not connected
            InputInvalid: Fingerprint is malformed
            NetworkMismatch: Identity is on a different chain than the registry
            SubmissionRejected: Signer declined to sign
            RegistryUnreachable: Registry failed on every attempt
        """
        fingerprint = _coerce_fingerprint(fingerprint)
        if not identity.is_connected:
            raise InvalidStateTransition("Wallet is not connected", stage=STAGE,
                                         hint="Connect your wallet before publishing.")
        if identity.chain_id != self.registry.expected_chain_id:
            logger.warning("Publish blocked by network mismatch",
                           active_chain_id=identity.chain_id,
                           expected_chain_id=self.registry.expected_chain_id)
            raise NetworkMismatch(identity.chain_id, self.registry.expected_chain_id, stage=STAGE)

        existing = await self._with_retry("lookup", lambda: self.registry.lookup(fingerprint, identity.address))
        if existing is not None:
            logger.info("Proof already registered, returning existing receipt",
                        fingerprint=fingerprint.value, transaction_id=existing.transaction_id)
            return existing

        submission = ProofSubmission(
            fingerprint=fingerprint,
            address=identity.address,
            chain_id=identity.chain_id,
            signature=await self._sign(fingerprint, identity),
        )

        logger.info("Submitting proof", fingerprint=fingerprint.value,
                    address=identity.address, chain_id=identity.chain_id,
                    registry=self.registry.describe())
        result = await self._with_retry("register", lambda: self.registry.register(submission))

        if result.already_registered:
            logger.info("Registry reported duplicate submission, returning existing receipt",
                        fingerprint=fingerprint.value, transaction_id=result.receipt.transaction_id)
        else:
            logger.info("Proof published", fingerprint=fingerprint.value,
                        transaction_id=result.receipt.transaction_id)
        return result.receipt

    async def _sign(self, fingerprint: ProofFingerprint, identity: WalletIdentity) -> Optional[str]:
        if self.signer is None:
            return None
        try:
            return await self.signer.request("personal_sign", [fingerprint.value, identity.address])
        except SigningProviderError as e:
            if e.rpc_code == SigningProviderError.USER_REJECTED:
                raise SubmissionRejected("Signer declined to sign the proof", stage=STAGE) from e
            e.stage = e.stage or STAGE
            raise

    async def _with_retry(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run a registry call under the timeout, retrying RegistryUnreachable with exponential backoff."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.wait_for(call(), self.timeout_seconds)
            except asyncio.TimeoutError as e:
                error = RegistryUnreachable(
                    f"Registry {operation} timed out after {self.timeout_seconds} seconds", stage=STAGE
                )
                error.__cause__ = e
            except RegistryUnreachable as e:
                error = e

            if attempt == self.max_attempts:
                logger.error("Registry unreachable, giving up",
                             operation=operation, attempts=attempt, error=error.message)
                raise error

            delay = self.backoff_seconds * (2 ** (attempt - 1))
            logger.warning("Registry call failed, retrying",
                           operation=operation, attempt=attempt, retry_in_seconds=delay,
                           error=error.message)
            await asyncio.sleep(delay)


def _coerce_fingerprint(value: Union[ProofFingerprint, str]) -> ProofFingerprint:
    if isinstance(value, ProofFingerprint):
        return value
    if not ProofFingerprint.is_well_formed(value):
        raise InputInvalid("Proof hash must be 0x followed by 64 hex characters", stage=STAGE)
    return ProofFingerprint(value=value)
