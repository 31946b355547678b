import asyncio
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import requests
import structlog
from fastapi.concurrency import run_in_threadpool
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from proof_anchor import config
from proof_anchor.core.errors import InputInvalid, NetworkMismatch, RegistryUnreachable
from proof_anchor.core.utils import utc_now
from proof_anchor.models.proof import ProofFingerprint, ProofReceipt, ProofSubmission

logger = structlog.get_logger()

__all__ = ["RegistrationResult", "ProofRegistry", "InMemoryProofRegistry", "HttpProofRegistry"]

STAGE = "publish"


@dataclass(frozen=True)
class RegistrationResult:
    receipt: ProofReceipt
    already_registered: bool = False


class ProofRegistry(ABC):
    """
    Records fingerprint-to-address proofs.

    Registration is idempotent per (fingerprint, address): a repeated submission
    returns the original receipt with ``already_registered`` set.
    """

    expected_chain_id: int

    @abstractmethod
    async def lookup(self, fingerprint: ProofFingerprint, address: str) -> Optional[ProofReceipt]:
        ...

    @abstractmethod
    async def register(self, submission: ProofSubmission) -> RegistrationResult:
        """Submit and wait for confirmation. Raises RegistryUnreachable on transport failure."""
        ...

    def describe(self) -> str:
        return type(self).__name__


def _key(fingerprint: ProofFingerprint, address: str) -> Tuple[str, str]:
    return fingerprint.value, address.lower()


class InMemoryProofRegistry(ProofRegistry):
    """Process-local registry used in development and tests."""

    def __init__(self, expected_chain_id: int = config.REGISTRY_CHAIN_ID):
        self.expected_chain_id = expected_chain_id
        self._receipts: Dict[Tuple[str, str], ProofReceipt] = {}
        self._lock = asyncio.Lock()

    async def lookup(self, fingerprint: ProofFingerprint, address: str) -> Optional[ProofReceipt]:
        return self._receipts.get(_key(fingerprint, address))

    async def register(self, submission: ProofSubmission) -> RegistrationResult:
        if submission.chain_id != self.expected_chain_id:
            raise NetworkMismatch(submission.chain_id, self.expected_chain_id, stage=STAGE)

        key = _key(submission.fingerprint, submission.address)
        async with self._lock:
            existing = self._receipts.get(key)
            if existing is not None:
                return RegistrationResult(receipt=existing, already_registered=True)

            receipt = ProofReceipt(
                transaction_id="0x" + secrets.token_hex(32),
                fingerprint=submission.fingerprint,
                address=submission.address,
                chain_id=submission.chain_id,
                confirmed_at=utc_now(),
            )
            self._receipts[key] = receipt

        logger.info("Proof registered", fingerprint=receipt.fingerprint.value,
                    address=receipt.address, transaction_id=receipt.transaction_id)
        return RegistrationResult(receipt=receipt)

    def __len__(self) -> int:
        return len(self._receipts)


class HttpProofRegistry(ProofRegistry):
    """
    Registry relay reached over HTTP.

    Endpoints:
        GET  {endpoint}/proofs/{fingerprint}/{address}  -> 200 receipt | 404
        POST {endpoint}/proofs                          -> 201 receipt | 200 {alreadyRegistered, ...}
                                                           | 409 {expectedChainId} on chain mismatch
    """

    def __init__(self, endpoint: str,
                 expected_chain_id: int = config.REGISTRY_CHAIN_ID,
                 timeout_seconds: float = config.REGISTRY_TIMEOUT_SECONDS,
                 session: Optional[requests.Session] = None):
        self.endpoint = endpoint.rstrip("/")
        self.expected_chain_id = expected_chain_id
        self.timeout_seconds = timeout_seconds
        self.session = session or self._build_session()
        logger.info("HTTP registry initialized", endpoint=self.endpoint,
                    expected_chain_id=expected_chain_id)

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        # Only lookups are retried here; submissions are retried by the publisher
        retry_strategy = Retry(
            total=2,
            backoff_factor=0.5,
            status_forcelist=[502, 503, 504],
            allowed_methods=frozenset({"GET"}),
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def describe(self) -> str:
        return f"{type(self).__name__}({self.endpoint})"

    async def lookup(self, fingerprint: ProofFingerprint, address: str) -> Optional[ProofReceipt]:
        return await run_in_threadpool(self._lookup_sync, fingerprint, address)

    async def register(self, submission: ProofSubmission) -> RegistrationResult:
        return await run_in_threadpool(self._register_sync, submission)

    def _lookup_sync(self, fingerprint: ProofFingerprint, address: str) -> Optional[ProofReceipt]:
        url = f"{self.endpoint}/proofs/{fingerprint.value}/{address.lower()}"
        try:
            response = self.session.get(url, timeout=self.timeout_seconds)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return self._parse_receipt(response.json())
        except requests.exceptions.RequestException as e:
            logger.error("Registry lookup failed", url=url, error=str(e))
            raise RegistryUnreachable(f"Registry lookup failed: {e}", stage=STAGE) from e

    def _register_sync(self, submission: ProofSubmission) -> RegistrationResult:
        url = f"{self.endpoint}/proofs"
        try:
            response = self.session.post(url, json=submission.to_wire(), timeout=self.timeout_seconds)
        except requests.exceptions.RequestException as e:
            logger.error("Registry submission failed", url=url, error=str(e))
            raise RegistryUnreachable(f"Registry submission failed: {e}", stage=STAGE) from e

        if response.status_code == 409:
            expected = self._json_body(response).get("expectedChainId", self.expected_chain_id)
            raise NetworkMismatch(submission.chain_id, int(expected), stage=STAGE)
        if response.status_code in (400, 422):
            raise InputInvalid(f"Registry rejected the submission: {response.text}", stage=STAGE)
        if response.status_code >= 400:
            raise RegistryUnreachable(
                f"Registry returned HTTP {response.status_code}", stage=STAGE
            )

        body = self._json_body(response)
        return RegistrationResult(receipt=self._parse_receipt(body),
                                  already_registered=bool(body.get("alreadyRegistered")))

    @staticmethod
    def _json_body(response: requests.Response) -> dict:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    @staticmethod
    def _parse_receipt(body: dict) -> ProofReceipt:
        try:
            return ProofReceipt(
                transaction_id=body["transactionId"],
                fingerprint=ProofFingerprint(value=body["fingerprint"]),
                address=body["address"],
                chain_id=int(body["chainId"]),
                confirmed_at=body.get("confirmedAt") or utc_now(),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise RegistryUnreachable(f"Registry returned a malformed receipt: {e}", stage=STAGE) from e
