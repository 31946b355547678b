import itertools
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Sequence

import requests
import structlog
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from proof_anchor import config
from proof_anchor.core.errors import (
    ChainNotRegistered, NoWalletAvailable, SigningProviderError, UserRejected
)
from proof_anchor.models.proof import ConnectionState, WalletIdentity

logger = structlog.get_logger()

__all__ = ["SigningProvider", "JsonRpcSigningProvider", "WalletConnector"]

STAGE = "wallet"


class SigningProvider(ABC):
    """
    EIP-1193 style signing provider.

    Implementations raise SigningProviderError carrying the provider's error code
    (4001 user rejected, 4902 unrecognized chain, ...).
    """

    @abstractmethod
    async def request(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        ...


class JsonRpcSigningProvider(SigningProvider):
    """Signing provider reached over HTTP JSON-RPC (wallet bridge or local signer)."""

    def __init__(self, url: str, timeout_seconds: float = config.SIGNING_PROVIDER_TIMEOUT_SECONDS,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self._ids = itertools.count(1)

    async def request(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        return await run_in_threadpool(self._request_sync, method, list(params or []))

    def _request_sync(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            # Interactive prompts may take a while, so the timeout is generous
            response = self.session.post(self.url, json=payload, timeout=self.timeout_seconds)
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.RequestException as e:
            logger.error("Signing provider unreachable", url=self.url, method=method, error=str(e))
            raise SigningProviderError(f"Signing provider unreachable: {e}",
                                       rpc_code=SigningProviderError.DISCONNECTED) from e

        error = body.get("error")
        if error:
            raise SigningProviderError(error.get("message", "Signing provider error"),
                                       rpc_code=error.get("code"))
        return body.get("result")


class WalletConnector:
    """
    Connects to a signing provider and reports the active identity.

    The connector returns immutable WalletIdentity values; it keeps only the
    current one so provider events can invalidate it. Nothing is persisted.
    """

    def __init__(self, provider: Optional[SigningProvider]):
        self.provider = provider
        self.state = ConnectionState.DISCONNECTED
        self._identity: Optional[WalletIdentity] = None
        # Last chain reported by the provider; kept across disconnects
        self.chain_id: Optional[int] = None

    @property
    def identity(self) -> Optional[WalletIdentity]:
        return self._identity

    async def connect(self) -> WalletIdentity:
        """
        Request account access and read the active chain.

        Raises:
            NoWalletAvailable: No provider, or the provider exposes no account
            UserRejected: The user declined the permission prompt
            SigningProviderError: Any other provider failure
        """
        if self.provider is None:
            raise NoWalletAvailable("No signing provider is available", stage=STAGE)

        self.state = ConnectionState.CONNECTING
        self._identity = None
        try:
            accounts = await self.provider.request("eth_requestAccounts")
            if not accounts:
                raise NoWalletAvailable("Signing provider returned no accounts", stage=STAGE,
                                        hint="Unlock your wallet or create an account, then connect again.")
            chain_id = _parse_chain_id(await self.provider.request("eth_chainId"))
            identity = WalletIdentity(address=accounts[0], chain_id=chain_id,
                                      connection_state=ConnectionState.CONNECTED)
        except SigningProviderError as e:
            self.state = ConnectionState.DISCONNECTED
            if e.rpc_code == SigningProviderError.USER_REJECTED:
                raise UserRejected("User rejected the wallet connection request", stage=STAGE) from e
            e.stage = e.stage or STAGE
            raise
        except (ValidationError, ValueError, TypeError) as e:
            self.state = ConnectionState.DISCONNECTED
            raise NoWalletAvailable(f"Signing provider returned an invalid identity: {e}",
                                    stage=STAGE) from e
        except BaseException:
            self.state = ConnectionState.DISCONNECTED
            raise

        self._identity = identity
        self.chain_id = identity.chain_id
        self.state = ConnectionState.CONNECTED
        logger.info("Wallet connected", address=identity.address, chain_id=identity.chain_id)
        return identity

    async def switch_chain(self, target_chain_id: int) -> None:
        """
        Ask the provider to switch networks.

        Raises:
            ChainNotRegistered: The provider does not know the target chain
            UserRejected: The user declined the switch
            SigningProviderError: Any other provider failure
        """
        if self.provider is None:
            raise NoWalletAvailable("No signing provider is available", stage=STAGE)

        try:
            await self.provider.request("wallet_switchEthereumChain",
                                        [{"chainId": hex(target_chain_id)}])
        except SigningProviderError as e:
            if e.rpc_code == SigningProviderError.UNRECOGNIZED_CHAIN:
                raise ChainNotRegistered(f"Chain {target_chain_id} is not registered in the wallet",
                                         stage=STAGE) from e
            if e.rpc_code == SigningProviderError.USER_REJECTED:
                raise UserRejected("User rejected the network switch", stage=STAGE) from e
            e.stage = e.stage or STAGE
            raise

        logger.info("Requested chain switch", target_chain_id=target_chain_id)
        self.handle_chain_changed(target_chain_id)

    def disconnect(self) -> None:
        if self._identity is not None:
            logger.info("Wallet disconnected", address=self._identity.address)
        self._identity = None
        self.state = ConnectionState.DISCONNECTED

    def handle_accounts_changed(self, accounts: Sequence[str]) -> None:
        """Apply a provider accountsChanged event."""
        if self._identity is None:
            return
        if not accounts or accounts[0].lower() != self._identity.address_key:
            logger.info("Wallet account changed", previous=self._identity.address)
            self.disconnect()

    def handle_chain_changed(self, chain_id: Any) -> None:
        """Apply a provider chainChanged event."""
        self.chain_id = _parse_chain_id(chain_id)
        if self._identity is None:
            return
        if self.chain_id != self._identity.chain_id:
            logger.info("Wallet chain changed",
                        previous_chain_id=self._identity.chain_id, chain_id=self.chain_id)
            self.disconnect()


def _parse_chain_id(value: Any) -> int:
    """Providers report chain ids as hex strings ("0x13882") or integers."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid chain id: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        value = value.strip()
        return int(value, 16) if value.lower().startswith("0x") else int(value)
    raise ValueError(f"Invalid chain id: {value!r}")
