"""
Wallet provider capability interface.

A wallet provider is anything that answers EIP-1193 style requests
(``request(method, params)``): a browser wallet bridged into Python, a
hardware signer, or a JSON-RPC node with unlocked accounts. Providers
declare what they can do through a capability set, and
``select_provider`` picks the best candidate from whatever is available.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from typing import Any, Optional

import aiohttp
from web3.providers import AsyncBaseProvider
from web3.providers.rpc import AsyncHTTPProvider
from web3.types import RPCEndpoint, RPCResponse

from csv_airdrop.errors import NoProviderFound

logger = logging.getLogger(__name__)

# EIP-1193 / JSON-RPC error codes the engine reacts to.
USER_REJECTED = 4001
UNRECOGNIZED_CHAIN = 4902


class Capability:
    """Capability names a provider may advertise."""

    ACCOUNTS = "accounts"
    SEND_TRANSACTION = "send_transaction"
    SWITCH_CHAIN = "switch_chain"
    ADD_CHAIN = "add_chain"
    EVENTS = "events"


REQUIRED_CAPABILITIES = frozenset({Capability.ACCOUNTS, Capability.SEND_TRANSACTION})


class ProviderRpcError(Exception):
    """An error answered by a wallet or node."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"[{code}] {message}")

    @property
    def effective_code(self) -> int:
        """
        The code that matters. Some wallets wrap the real error, e.g. an
        unrecognized chain, inside data.originalError.
        """
        if isinstance(self.data, dict):
            original = self.data.get("originalError")
            if isinstance(original, dict) and "code" in original:
                return original["code"]
        return self.code

    @property
    def user_rejected(self) -> bool:
        return self.effective_code == USER_REJECTED


AccountsListener = Callable[[list[str]], None]
ChainListener = Callable[[int], None]


class WalletProvider(ABC):
    """Base class for anything the ledger gateway can talk to."""

    name: str = "wallet"
    capabilities: frozenset[str] = REQUIRED_CAPABILITIES

    @abstractmethod
    async def request(self, method: str, params: Optional[list] = None) -> Any:
        """Send one request. Raises ProviderRpcError when the provider answers with an error."""

    def supports(self, *capabilities: str) -> bool:
        return all(c in self.capabilities for c in capabilities)

    def subscribe(self, on_accounts: AccountsListener, on_chain: ChainListener) -> None:
        """Register for account/network change notifications. No-op by default."""

    async def close(self) -> None:
        """Release any transport resources."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} {sorted(self.capabilities)}>"


def select_provider(
    providers: Sequence[Optional[WalletProvider]],
    preferred: Optional[str] = None,
) -> WalletProvider:
    """
    Pick the provider to use from the ones available.

    Ranking: providers lacking account access or transaction sending are
    ignored; a provider named ``preferred`` wins; then the one advertising
    the most capabilities; then discovery order.
    """
    candidates = [
        (index, p) for index, p in enumerate(providers)
        if p is not None and p.supports(*REQUIRED_CAPABILITIES)
    ]
    if not candidates:
        names = ", ".join(p.name for p in providers if p is not None) or "none"
        raise NoProviderFound(f"no compatible wallet provider available (found: {names})")

    def rank(item: tuple[int, WalletProvider]) -> tuple[int, int, int]:
        index, provider = item
        is_preferred = preferred is not None and provider.name.lower() == preferred.lower()
        return (0 if is_preferred else 1, -len(provider.capabilities), index)

    chosen = min(candidates, key=rank)[1]
    logger.debug("Selected wallet provider %r out of %d candidate(s)", chosen, len(candidates))
    return chosen


class RpcWalletProvider(WalletProvider):
    """
    Provider backed by a JSON-RPC endpoint whose node holds unlocked accounts
    (a local dev chain, or a signer proxy such as Frame or Clef).

    Nodes have no access prompt, so eth_requestAccounts is answered with
    eth_accounts. Network switching is not available: the node is on
    whatever chain it is on.
    """

    name = "rpc"
    capabilities = REQUIRED_CAPABILITIES

    def __init__(self, endpoint_uri: str):
        self.endpoint_uri = endpoint_uri
        self._provider = AsyncHTTPProvider(endpoint_uri)

    async def request(self, method: str, params: Optional[list] = None) -> Any:
        if method == "eth_requestAccounts":
            method = "eth_accounts"
        logger.debug("RPC %s %s", method, params)
        try:
            response = await self._provider.make_request(method, params or [])
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            raise ProviderRpcError(-32603, f"transport error talking to {self.endpoint_uri}: {e}")
        error = response.get("error")
        if error:
            if isinstance(error, dict):
                raise ProviderRpcError(
                    error.get("code", -32603),
                    error.get("message", "unknown error"),
                    error.get("data"),
                )
            raise ProviderRpcError(-32603, str(error))
        return response.get("result")

    async def close(self) -> None:
        disconnect = getattr(self._provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()


class WalletWeb3Provider(AsyncBaseProvider):
    """
    Presents a WalletProvider to AsyncWeb3, so web3's own helpers (such as
    wait_for_transaction_receipt) can run over any wallet.

    Wallet errors are answered as JSON-RPC error responses and surface from
    web3 as Web3RPCError.
    """

    def __init__(self, wallet: WalletProvider):
        super().__init__()
        self.wallet = wallet
        self._ids = itertools.count(1)

    async def make_request(self, method: RPCEndpoint, params: Any) -> RPCResponse:
        request_id = next(self._ids)
        try:
            result = await self.wallet.request(str(method), list(params or []))
        except ProviderRpcError as e:
            error = {"code": e.code, "message": e.message}
            if e.data is not None:
                error["data"] = e.data
            return {"jsonrpc": "2.0", "id": request_id, "error": error}
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    async def is_connected(self, show_traceback: bool = False) -> bool:
        return True
