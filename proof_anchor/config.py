import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

# Analysis
MAX_PAYLOAD_BYTES = int(os.getenv("MAX_PAYLOAD_BYTES", 50 * 1024 * 1024))  # 50MiB default
ANALYZER_ENDPOINT = os.getenv("ANALYZER_ENDPOINT", "")
ANALYZER_TIMEOUT_SECONDS = float(os.getenv("ANALYZER_TIMEOUT_SECONDS", "30"))

# Registry
REGISTRY_ENDPOINT = os.getenv("REGISTRY_ENDPOINT", "")
REGISTRY_CHAIN_ID = int(os.getenv("REGISTRY_CHAIN_ID", "80002"))  # Polygon Amoy
REGISTRY_TIMEOUT_SECONDS = float(os.getenv("REGISTRY_TIMEOUT_SECONDS", "60"))
REGISTRY_MAX_ATTEMPTS = int(os.getenv("REGISTRY_MAX_ATTEMPTS", "3"))
REGISTRY_BACKOFF_SECONDS = float(os.getenv("REGISTRY_BACKOFF_SECONDS", "1.0"))
REGISTRY_METADATA_PATH = os.getenv("REGISTRY_METADATA_PATH", "")

# Wallet
SIGNING_PROVIDER_URL = os.getenv("SIGNING_PROVIDER_URL", "")
SIGNING_PROVIDER_TIMEOUT_SECONDS = float(os.getenv("SIGNING_PROVIDER_TIMEOUT_SECONDS", "120"))

# Server
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", 8000))
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def load_registry_metadata(path: str) -> Dict[str, Any]:
    """
    Load the registry contract deployment metadata.

    The file is written by the contract deployment tooling and looks like
    ``{"contractName": ..., "chains": [{"chainId", "address", "deployedAt"}], "abi": [...]}``.

    Returns:
        Dict with ``contract_name``, ``chain_id`` and ``address`` of the first chain entry
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    chains = data.get("chains") or []
    if not chains:
        raise ValueError(f"Registry metadata at {path} lists no deployed chains")

    first = chains[0]
    return {
        "contract_name": data.get("contractName", ""),
        "chain_id": int(first["chainId"]),
        "address": first.get("address", ""),
    }


def registry_chain_id(metadata_path: Optional[str] = None) -> int:
    """Chain id the registry expects, preferring deployment metadata when present."""
    path = metadata_path if metadata_path is not None else REGISTRY_METADATA_PATH
    if path and Path(path).exists():
        return load_registry_metadata(path)["chain_id"]
    return REGISTRY_CHAIN_ID
