"""
Pydantic models for proof fingerprints, wallet identities, and registry receipts.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from proof_anchor.core.utils import utc_now

FINGERPRINT_PATTERN = re.compile(r"^0x[0-9a-f]{64}$")
ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


class ConnectionState(str, Enum):
    """Enumeration of wallet connection states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ProofFingerprint(BaseModel):
    """Fixed-length SHA-256 fingerprint of a canonical analysis record, 0x-prefixed hex."""

    model_config = ConfigDict(frozen=True)

    value: str = Field(..., description="0x-prefixed lowercase hex digest (32 bytes)")
    algorithm: str = Field(default="sha256")

    @field_validator("value")
    @classmethod
    def validate_value(cls, v):
        v = v.strip().lower()
        if not FINGERPRINT_PATTERN.match(v):
            raise ValueError("Fingerprint must be 0x followed by 64 hex characters")
        return v

    @classmethod
    def is_well_formed(cls, value: Any) -> bool:
        return isinstance(value, str) and bool(FINGERPRINT_PATTERN.match(value.strip().lower()))

    def __str__(self) -> str:
        return self.value


class WalletIdentity(BaseModel):
    """A connected signing identity. Replaced, never mutated, when the wallet changes."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    address: str
    chain_id: int = Field(..., alias="chainId", ge=1)
    connection_state: ConnectionState = Field(default=ConnectionState.CONNECTED, alias="connectionState")

    @field_validator("address")
    @classmethod
    def validate_address(cls, v):
        v = v.strip()
        if not ADDRESS_PATTERN.match(v):
            raise ValueError("Address must be 0x followed by 40 hex characters")
        return v

    @property
    def is_connected(self) -> bool:
        return self.connection_state == ConnectionState.CONNECTED

    @property
    def address_key(self) -> str:
        """Case-insensitive form of the address for registry lookups."""
        return self.address.lower()


class ProofSubmission(BaseModel):
    """What is sent to the registry: one per (fingerprint, address) pair."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    fingerprint: ProofFingerprint
    address: str
    chain_id: int = Field(..., alias="chainId")
    submitted_at: datetime = Field(default_factory=utc_now, alias="submittedAt")
    signature: Optional[str] = Field(None, description="Signer's signature over the fingerprint")

    def to_wire(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, mode="json")
        data["fingerprint"] = self.fingerprint.value
        return data


class ProofReceipt(BaseModel):
    """Confirmed registration of a fingerprint. Terminal and immutable."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    transaction_id: str = Field(..., alias="transactionId", min_length=1)
    fingerprint: ProofFingerprint
    address: str
    chain_id: int = Field(..., alias="chainId")
    confirmed_at: datetime = Field(default_factory=utc_now, alias="confirmedAt")

    def to_public(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, mode="json")
        data["fingerprint"] = self.fingerprint.value
        return data
