import asyncio

import pytest

from conftest import (
    AMOY_CHAIN_ID, WALLET_ADDRESS, BlockingAnalyzer, FakeSigningProvider, png_bytes, rejection
)
from proof_anchor.core.errors import (
    AnalysisUnavailable, InputInvalid, InvalidStateTransition, NetworkMismatch, OperationAbandoned,
    NoWalletAvailable, PayloadTooLarge, RegistryUnreachable, UserRejected
)
from proof_anchor.models.content import ContentItem, ContentKind
from proof_anchor.services.analysis import AnalysisGateway
from proof_anchor.services.fingerprint import ProofHasher, fingerprint_record
from proof_anchor.services.publisher import ProofPublisher
from proof_anchor.services.registry import InMemoryProofRegistry
from proof_anchor.services.wallet import WalletConnector
from proof_anchor.services.workflow import WorkflowController, WorkflowState


class CountingHasher(ProofHasher):
    def __init__(self):
        self.calls = 0

    def fingerprint(self, record):
        self.calls += 1
        return super().fingerprint(record)


def build(provider=None, gateway=None, publisher=None, hasher=None):
    return WorkflowController(gateway=gateway or AnalysisGateway(),
                              wallet=WalletConnector(provider),
                              publisher=publisher,
                              hasher=hasher)


@pytest.mark.asyncio
async def test_text_to_proof(controller, registry):
    controller.submit(ContentItem.from_text("hello world"))
    assert controller.state == WorkflowState.CONTENT_SUBMITTED

    record = await controller.analyze()
    assert controller.state == WorkflowState.ANALYZED
    assert record.word_count == 2
    published_fingerprint = controller.fingerprint
    assert published_fingerprint == fingerprint_record(record)

    identity = await controller.connect_wallet()
    assert controller.state == WorkflowState.WALLET_CONNECTED
    assert identity.address == WALLET_ADDRESS
    assert identity.chain_id == AMOY_CHAIN_ID

    receipt = await controller.publish()
    assert controller.state == WorkflowState.PROOF_PUBLISHED
    assert receipt.transaction_id
    assert receipt.fingerprint == published_fingerprint
    assert len(registry) == 1


@pytest.mark.asyncio
async def test_prove_image(controller):
    item = ContentItem.from_bytes(ContentKind.IMAGE, png_bytes(), "photo.png", "image/png")

    receipt = await controller.prove(item)

    snapshot = controller.snapshot()
    assert snapshot["state"] == "proof_published"
    assert snapshot["proofHash"] == receipt.fingerprint.value
    assert snapshot["receipt"]["transactionId"] == receipt.transaction_id
    assert snapshot["analysis"]["metadata"]["width"] == 4
    assert snapshot["failure"] is None


@pytest.mark.asyncio
async def test_fingerprint_computed_once(gateway, provider, publisher):
    hasher = CountingHasher()
    controller = WorkflowController(gateway=gateway, wallet=WalletConnector(provider),
                                    publisher=publisher, hasher=hasher)

    receipt = await controller.prove(ContentItem.from_text("hello world"))

    assert hasher.calls == 1
    assert receipt.fingerprint == controller.fingerprint


@pytest.mark.asyncio
async def test_item_dropped_after_analysis(controller):
    controller.submit(ContentItem.from_text("hello world"))
    assert controller.item is not None

    await controller.analyze()

    assert controller.item is None
    assert controller.record is not None


@pytest.mark.parametrize("item", [None, ContentItem.from_text("  ")])
def test_empty_submission_fails(controller, item):
    with pytest.raises(InputInvalid):
        controller.submit(item)
    assert controller.state == WorkflowState.FAILED
    assert controller.failure_reason == "InputInvalid"


@pytest.mark.asyncio
async def test_submit_only_from_idle_or_failed(controller):
    controller.submit(ContentItem.from_text("hello"))

    with pytest.raises(InvalidStateTransition):
        controller.submit(ContentItem.from_text("again"))
    assert controller.state == WorkflowState.CONTENT_SUBMITTED

    await controller.analyze()
    with pytest.raises(InvalidStateTransition):
        controller.submit(ContentItem.from_text("again"))
    assert controller.state == WorkflowState.ANALYZED


@pytest.mark.asyncio
async def test_out_of_order_operations_leave_state_unchanged(controller):
    with pytest.raises(InvalidStateTransition):
        await controller.analyze()
    assert controller.state == WorkflowState.IDLE

    controller.submit(ContentItem.from_text("hello"))
    with pytest.raises(InvalidStateTransition):
        await controller.connect_wallet()
    with pytest.raises(InvalidStateTransition):
        await controller.publish()
    assert controller.state == WorkflowState.CONTENT_SUBMITTED

    await controller.analyze()
    with pytest.raises(InvalidStateTransition):
        await controller.publish()
    assert controller.state == WorkflowState.ANALYZED
    assert controller.failure is None


@pytest.mark.asyncio
async def test_analysis_failure(provider, publisher):
    controller = build(provider, gateway=AnalysisGateway(max_payload_bytes=4), publisher=publisher)
    controller.submit(ContentItem.from_text("hello world"))

    with pytest.raises(PayloadTooLarge):
        await controller.analyze()

    assert controller.state == WorkflowState.FAILED
    assert controller.failure_reason == "PayloadTooLarge"
    assert controller.failure.stage == "analysis"
    assert controller.fingerprint is None


@pytest.mark.asyncio
async def test_unfingerprintable_record_fails_analysis(provider, publisher):
    class BrokenHasher(ProofHasher):
        def fingerprint(self, record):
            raise ValueError("unsupported metadata value")

    controller = build(provider, publisher=publisher, hasher=BrokenHasher())
    controller.submit(ContentItem.from_text("hello"))

    with pytest.raises(AnalysisUnavailable):
        await controller.analyze()

    assert controller.state == WorkflowState.FAILED
    assert controller.record is None


@pytest.mark.asyncio
async def test_wallet_rejection_then_resubmit(publisher):
    provider = FakeSigningProvider(errors={"eth_requestAccounts": rejection()})
    controller = build(provider, publisher=publisher)
    controller.submit(ContentItem.from_text("hello world"))
    await controller.analyze()

    with pytest.raises(UserRejected):
        await controller.connect_wallet()

    assert controller.state == WorkflowState.FAILED
    assert controller.failure_reason == "UserRejected"
    assert controller.snapshot()["failure"]["stage"] == "wallet"

    controller.submit(ContentItem.from_text("hello again"))
    assert controller.state == WorkflowState.CONTENT_SUBMITTED
    assert controller.failure is None
    assert controller.record is None


@pytest.mark.asyncio
async def test_network_mismatch_leaves_no_receipt(publisher, registry):
    controller = build(FakeSigningProvider(chain_id="0x1"), publisher=publisher)
    controller.submit(ContentItem.from_text("hello world"))
    await controller.analyze()
    await controller.connect_wallet()

    with pytest.raises(NetworkMismatch):
        await controller.publish()

    assert controller.state == WorkflowState.FAILED
    assert controller.failure_reason == "NetworkMismatch"
    assert controller.receipt is None
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_concurrent_transition_rejected(provider, publisher):
    analyzer = BlockingAnalyzer()
    controller = build(provider, gateway=AnalysisGateway(analyzer=analyzer), publisher=publisher)
    controller.submit(ContentItem.from_text("hello world"))

    task = asyncio.create_task(controller.analyze())
    await analyzer.started.wait()

    assert controller.busy
    with pytest.raises(InvalidStateTransition):
        await controller.analyze()
    with pytest.raises(InvalidStateTransition):
        await controller.connect_wallet()
    with pytest.raises(InvalidStateTransition):
        controller.reset()
    assert controller.state == WorkflowState.CONTENT_SUBMITTED

    analyzer.release.set()
    await task

    assert controller.state == WorkflowState.ANALYZED
    assert not controller.busy


@pytest.mark.asyncio
async def test_cancelled_operation_result_is_discarded(provider, publisher):
    analyzer = BlockingAnalyzer()
    controller = build(provider, gateway=AnalysisGateway(analyzer=analyzer), publisher=publisher)
    controller.submit(ContentItem.from_text("hello world"))

    task = asyncio.create_task(controller.analyze())
    await analyzer.started.wait()
    controller.cancel()
    assert not controller.busy

    analyzer.release.set()
    with pytest.raises(OperationAbandoned):
        await task

    assert controller.state == WorkflowState.CONTENT_SUBMITTED
    assert controller.record is None
    assert controller.fingerprint is None


@pytest.mark.asyncio
async def test_reset(controller):
    await controller.prove(ContentItem.from_text("hello world"))

    controller.reset()

    assert controller.state == WorkflowState.IDLE
    assert controller.receipt is None
    assert controller.fingerprint is None


def test_cancel_without_operation_is_noop(controller):
    controller.cancel()
    assert controller.state == WorkflowState.IDLE


async def analyzed(controller):
    controller.submit(ContentItem.from_text("hello world"))
    return await controller.analyze()


async def connected(controller):
    await analyzed(controller)
    await controller.connect_wallet()


@pytest.mark.asyncio
async def test_chain_change_after_connect_blocks_publish(controller, provider, registry):
    await connected(controller)

    controller.wallet.handle_chain_changed("0x1")

    with pytest.raises(NetworkMismatch) as exc_info:
        await controller.publish()

    assert exc_info.value.active_chain_id == 1
    assert exc_info.value.expected_chain_id == AMOY_CHAIN_ID
    assert controller.state == WorkflowState.FAILED
    assert controller.failure.stage == "publish"
    assert controller.receipt is None
    assert len(registry) == 0
    assert "personal_sign" not in provider.methods()


@pytest.mark.asyncio
async def test_reconnect_on_other_chain_blocks_publish(controller, provider, registry):
    await connected(controller)

    await controller.wallet.switch_chain(137)
    await controller.wallet.connect()

    with pytest.raises(NetworkMismatch) as exc_info:
        await controller.publish()

    assert exc_info.value.active_chain_id == 137
    assert len(registry) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("change", [
    lambda wallet: wallet.handle_accounts_changed(["0x" + "11" * 20]),
    lambda wallet: wallet.handle_accounts_changed([]),
    lambda wallet: wallet.disconnect(),
])
async def test_lost_identity_blocks_publish(controller, registry, change):
    await connected(controller)

    change(controller.wallet)

    with pytest.raises(NoWalletAvailable):
        await controller.publish()

    assert controller.state == WorkflowState.FAILED
    assert controller.failure_reason == "NoWalletAvailable"
    assert controller.receipt is None
    assert len(registry) == 0

    # A fresh submit starts over
    controller.submit(ContentItem.from_text("hello world"))
    assert controller.state == WorkflowState.CONTENT_SUBMITTED


@pytest.mark.asyncio
async def test_record_cannot_be_changed_after_fingerprinting(controller):
    record = await analyzed(controller)
    record.metadata["wordCount"] = 999
    controller.record.metadata["entities"].append("Mallory")

    stored = controller.record
    assert stored.word_count == 2
    assert stored.metadata["entities"] == []
    assert fingerprint_record(stored) == controller.fingerprint
    assert controller.snapshot()["analysis"]["metadata"]["wordCount"] == 2

    await controller.connect_wallet()
    receipt = await controller.publish()
    assert receipt.fingerprint == fingerprint_record(controller.record)


@pytest.mark.asyncio
async def test_unexpected_analysis_error_is_analysis_unavailable(provider, publisher):
    class CrashingHasher(ProofHasher):
        def fingerprint(self, record):
            raise TypeError("hasher crashed")

    controller = build(provider, publisher=publisher, hasher=CrashingHasher())
    controller.submit(ContentItem.from_text("hello"))

    with pytest.raises(AnalysisUnavailable):
        await controller.analyze()

    assert controller.failure_reason == "AnalysisUnavailable"
    assert controller.failure.stage == "analysis"


@pytest.mark.asyncio
async def test_unexpected_publish_error_is_registry_unreachable(provider):
    class CrashingRegistry(InMemoryProofRegistry):
        async def lookup(self, fingerprint, address):
            raise RuntimeError("registry client crashed")

    publisher = ProofPublisher(registry=CrashingRegistry(expected_chain_id=AMOY_CHAIN_ID),
                               signer=provider, timeout_seconds=1.0, max_attempts=1, backoff_seconds=0)
    controller = build(provider, publisher=publisher)
    await connected(controller)

    with pytest.raises(RegistryUnreachable):
        await controller.publish()

    assert controller.failure_reason == "RegistryUnreachable"
    assert controller.failure.stage == "publish"
