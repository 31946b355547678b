import asyncio
import io

import pytest
from PIL import Image

from proof_anchor.core.errors import RegistryUnreachable, SigningProviderError
from proof_anchor.models.proof import ConnectionState, WalletIdentity
from proof_anchor.services.analysis import AnalysisGateway, Analyzer, StubAnalyzer
from proof_anchor.services.publisher import ProofPublisher
from proof_anchor.services.registry import InMemoryProofRegistry
from proof_anchor.services.wallet import SigningProvider, WalletConnector
from proof_anchor.services.workflow import WorkflowController

WALLET_ADDRESS = "0xABCD00000000000000000000000000000000EF01"
AMOY_CHAIN_ID = 80002


class FakeSigningProvider(SigningProvider):
    """In-process stand-in for a browser wallet."""

    def __init__(self, accounts=None, chain_id=hex(AMOY_CHAIN_ID), errors=None):
        self.accounts = [WALLET_ADDRESS] if accounts is None else accounts
        self.chain_id = chain_id
        self.errors = errors or {}
        self.calls = []

    async def request(self, method, params=None):
        self.calls.append((method, list(params or [])))
        if method in self.errors:
            raise self.errors[method]
        if method == "eth_requestAccounts":
            return self.accounts
        if method == "eth_chainId":
            return self.chain_id
        if method == "wallet_switchEthereumChain":
            self.chain_id = params[0]["chainId"]
            return None
        if method == "personal_sign":
            return "0x" + "ab" * 65
        raise SigningProviderError(f"Unsupported method {method}", rpc_code=4200)

    def methods(self):
        return [method for method, _ in self.calls]


class FlakyRegistry(InMemoryProofRegistry):
    """Registry whose first `failures` register calls report the registry as unreachable."""

    def __init__(self, failures, expected_chain_id=AMOY_CHAIN_ID):
        super().__init__(expected_chain_id=expected_chain_id)
        self.failures = failures
        self.register_calls = 0

    async def register(self, submission):
        self.register_calls += 1
        if self.register_calls <= self.failures:
            raise RegistryUnreachable("registry offline")
        return await super().register(submission)


class BlockingAnalyzer(Analyzer):
    """Analyzer that waits until the test releases it."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.inner = StubAnalyzer()

    async def analyze(self, item, options):
        self.started.set()
        await self.release.wait()
        return await self.inner.analyze(item, options)


def rejection(code=SigningProviderError.USER_REJECTED):
    return SigningProviderError("User rejected the request.", rpc_code=code)


def png_bytes(width=4, height=3):
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color=(200, 10, 10)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def provider():
    return FakeSigningProvider()


@pytest.fixture
def registry():
    return InMemoryProofRegistry(expected_chain_id=AMOY_CHAIN_ID)


@pytest.fixture
def gateway():
    return AnalysisGateway(analyzer=StubAnalyzer())


@pytest.fixture
def publisher(registry, provider):
    return ProofPublisher(registry=registry, signer=provider, timeout_seconds=1.0,
                          max_attempts=3, backoff_seconds=0)


@pytest.fixture
def identity():
    return WalletIdentity(address=WALLET_ADDRESS, chain_id=AMOY_CHAIN_ID,
                          connection_state=ConnectionState.CONNECTED)


@pytest.fixture
def controller(gateway, provider, publisher):
    return WorkflowController(gateway=gateway, wallet=WalletConnector(provider), publisher=publisher)
