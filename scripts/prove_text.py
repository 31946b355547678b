#!/usr/bin/env python3
"""
Run the full content-to-proof workflow for a piece of text from the command line.

The wallet is reached through SIGNING_PROVIDER_URL (or --provider), an HTTP
JSON-RPC endpoint exposing eth_requestAccounts / eth_chainId / personal_sign.
"""

import asyncio
import json
import sys
from pathlib import Path

# Add the parent directory to Python path
sys.path.append(str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from proof_anchor import config
from proof_anchor.core.errors import ProofWorkflowError
from proof_anchor.core.logging_config import configure_logging
from proof_anchor.models.content import ContentItem
from proof_anchor.services.analysis import AnalysisGateway
from proof_anchor.services.publisher import ProofPublisher
from proof_anchor.services.registry import HttpProofRegistry, InMemoryProofRegistry
from proof_anchor.services.wallet import JsonRpcSigningProvider, WalletConnector
from proof_anchor.services.workflow import WorkflowController


def build_controller(provider_url: str, registry_url: str) -> WorkflowController:
    chain_id = config.registry_chain_id()
    registry = (HttpProofRegistry(registry_url, expected_chain_id=chain_id)
                if registry_url else InMemoryProofRegistry(expected_chain_id=chain_id))
    provider = JsonRpcSigningProvider(provider_url) if provider_url else None
    return WorkflowController(
        gateway=AnalysisGateway(),
        wallet=WalletConnector(provider),
        publisher=ProofPublisher(registry=registry, signer=provider),
    )


async def prove(text: str, provider_url: str, registry_url: str) -> int:
    controller = build_controller(provider_url, registry_url)
    try:
        await controller.prove(ContentItem.from_text(text))
    except ProofWorkflowError as e:
        print(f"❌ {e.code} during {e.stage}: {e.message}")
        print(f"   {e.hint}")
        return 1

    print(json.dumps(controller.snapshot(), indent=2))
    return 0


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Analyze text and publish its proof")
    parser.add_argument("text", help="Text to analyze and prove")
    parser.add_argument("--provider", default=config.SIGNING_PROVIDER_URL,
                        help="Signing provider JSON-RPC URL")
    parser.add_argument("--registry", default=config.REGISTRY_ENDPOINT,
                        help="Registry relay URL (in-memory registry when empty)")
    parser.add_argument("--verbose", action="store_true",
                        help="Enable verbose logging")

    args = parser.parse_args()
    configure_logging("DEBUG" if args.verbose else "WARNING")

    sys.exit(asyncio.run(prove(args.text, args.provider, args.registry)))
