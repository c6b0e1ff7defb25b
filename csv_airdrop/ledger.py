"""
Ledger gateway: everything the engine asks of the chain.

Wraps a WalletProvider and turns its EIP-1193 requests into the handful of
operations a distribution needs:

- resolve the signing identity (the account access prompt)
- assert, switch to, or register the target network
- read the token's precision and the distributor's token balance
- submit exactly one distribute(recipients, amounts) transaction
- wait for that transaction to settle

Calldata is ABI-encoded locally with eth-abi, so the provider only ever
sees eth_call / eth_sendTransaction payloads. Nothing here retries a
submission, and nothing here imposes a timeout: approval prompts and
settlement are human- and network-paced.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_typing import ChecksumAddress
from eth_utils import decode_hex, encode_hex, function_signature_to_4byte_selector
from web3 import AsyncWeb3, Web3
from web3.exceptions import Web3RPCError

from csv_airdrop.batch import shorten_address
from csv_airdrop.config import AirdropConfig, NetworkDescriptor
from csv_airdrop.errors import (
    AuthorizationDenied,
    LengthMismatch,
    NetworkSwitchRejected,
    NetworkUnavailable,
    SubmissionRejected,
)
from csv_airdrop.providers import (
    UNRECOGNIZED_CHAIN,
    Capability,
    ProviderRpcError,
    WalletProvider,
    WalletWeb3Provider,
)

logger = logging.getLogger(__name__)

# Used when the token's decimals() cannot be read.
DEFAULT_PRECISION = 18

DECIMALS_SIGNATURE = "decimals()"
BALANCE_OF_SIGNATURE = "balanceOf(address)"
DISTRIBUTE_SIGNATURE = "airdrop(address[],uint256[])"


def encode_call(signature: str, types: Sequence[str] = (), args: Sequence[Any] = ()) -> str:
    """Selector plus ABI-encoded arguments, as 0x-prefixed hex."""
    data = function_signature_to_4byte_selector(signature)
    if types:
        data += encode(list(types), list(args))
    return encode_hex(data)


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(str(value), 16)


class ReceiptStatus(Enum):
    """Settlement status of a submitted distribution."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class DistributionReceipt:
    """Handle for one submitted distribution. Settles exactly once."""

    request_id: str
    recipient_count: int = 0
    status: ReceiptStatus = ReceiptStatus.PENDING
    confirmed_at_block: Optional[int] = None
    error: Optional[str] = None

    @property
    def settled(self) -> bool:
        return self.status is not ReceiptStatus.PENDING

    def settle(
        self,
        status: ReceiptStatus,
        block: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        if self.settled:
            raise RuntimeError(f"receipt {self.request_id} already settled as {self.status.value}")
        if status is ReceiptStatus.PENDING:
            raise ValueError("a receipt can only settle to a terminal status")
        self.status = status
        self.confirmed_at_block = block
        self.error = error


@dataclass(frozen=True)
class TokenMeta:
    """Token facts cached for a session."""

    precision: int
    is_fallback: bool = False


class LedgerGateway:
    """Ledger operations over one wallet provider."""

    def __init__(self, provider: WalletProvider, config: AirdropConfig):
        self.provider = provider
        self.config = config
        self.web3 = AsyncWeb3(WalletWeb3Provider(provider), middleware=[])

    # ── Identity and network ────────────────────────────────────

    async def resolve_identity(self) -> ChecksumAddress:
        """Ask the wallet for account access and return the active account."""
        try:
            accounts = await self.provider.request("eth_requestAccounts")
        except ProviderRpcError as e:
            if e.user_rejected:
                raise AuthorizationDenied("account access was refused in the wallet")
            raise NetworkUnavailable(f"wallet did not answer the account request: {e.message}")

        if not accounts:
            raise AuthorizationDenied("no account authorized in the wallet")

        try:
            account = Web3.to_checksum_address(accounts[0])
        except (TypeError, ValueError):
            raise NetworkUnavailable(f"wallet returned a malformed account: {accounts[0]!r}")
        logger.info("Resolved signing account %s via %s", shorten_address(account),
                    self.provider.name)
        return account

    async def current_chain_id(self) -> int:
        try:
            answer = await self.provider.request("eth_chainId")
        except ProviderRpcError as e:
            raise NetworkUnavailable(f"could not read the current network: {e.message}")
        try:
            return _to_int(answer)
        except (TypeError, ValueError):
            raise NetworkUnavailable(f"wallet returned a malformed chain id: {answer!r}")

    async def _switch(self, chain_id: int) -> None:
        await self.provider.request(
            "wallet_switchEthereumChain", [{"chainId": hex(chain_id)}]
        )

    async def _register(self, network: NetworkDescriptor) -> None:
        if not self.provider.supports(Capability.ADD_CHAIN):
            raise NetworkUnavailable(
                f"chain {network.chain_id} is unknown to {self.provider.name} "
                "and the provider cannot register networks"
            )
        logger.info("Registering network %s (%d) with %s", network.name, network.chain_id,
                    self.provider.name)
        try:
            await self.provider.request("wallet_addEthereumChain", [network.to_wallet_params()])
        except ProviderRpcError as e:
            if e.user_rejected:
                raise NetworkSwitchRejected(f"adding network {network.name} was declined")
            raise NetworkUnavailable(f"could not add network {network.name}: {e.message}")

    async def assert_network(
        self,
        target_chain_id: Optional[int] = None,
        network: Optional[NetworkDescriptor] = None,
    ) -> int:
        """
        Make sure the provider is on the target chain.

        Switches when it is not; when the wallet does not know the chain,
        registers it from the network descriptor and switches again.
        Returns the chain id the provider ends up on.
        """
        target = target_chain_id if target_chain_id is not None else self.config.target_chain_id
        if network is None and target == self.config.target_chain_id:
            network = self.config.target_network

        current = await self.current_chain_id()
        if current == target:
            return current

        if not self.provider.supports(Capability.SWITCH_CHAIN):
            raise NetworkUnavailable(
                f"{self.provider.name} is on chain {current}, target is {target}, "
                "and the provider cannot switch networks"
            )

        logger.info("Switching network %d -> %d", current, target)
        try:
            await self._switch(target)
        except ProviderRpcError as e:
            if e.user_rejected:
                raise NetworkSwitchRejected(f"switching to chain {target} was declined")
            if e.effective_code != UNRECOGNIZED_CHAIN:
                raise NetworkUnavailable(f"could not switch to chain {target}: {e.message}")
            if network is None:
                raise NetworkUnavailable(
                    f"chain {target} is unknown to the wallet and no network descriptor is configured"
                )
            await self._register(network)
            try:
                await self._switch(target)
            except ProviderRpcError as e2:
                if e2.user_rejected:
                    raise NetworkSwitchRejected(f"switching to chain {target} was declined")
                raise NetworkUnavailable(f"could not switch to chain {target}: {e2.message}")

        current = await self.current_chain_id()
        if current != target:
            raise NetworkUnavailable(f"wallet reports chain {current} after switching to {target}")
        return current

    # ── Contract reads ──────────────────────────────────────────

    async def _call(self, to: str, data: str) -> bytes:
        result = await self.provider.request("eth_call", [{"to": to, "data": data}, "latest"])
        return decode_hex(result or "0x")

    async def read_precision(self, token_address: Optional[str] = None) -> int:
        """Read decimals() from the token. Raises on any failure."""
        token = token_address or self.config.token
        raw = await self._call(token, encode_call(DECIMALS_SIGNATURE))
        (precision,) = decode(["uint8"], raw)
        return precision

    async def read_token_meta(self) -> TokenMeta:
        """Best-effort precision read that falls back to DEFAULT_PRECISION."""
        try:
            precision = await self.read_precision()
        except (ProviderRpcError, DecodingError, ValueError) as e:
            logger.warning("Could not read token decimals (%s); assuming %d",
                           e, DEFAULT_PRECISION)
            return TokenMeta(precision=DEFAULT_PRECISION, is_fallback=True)
        logger.info("Token decimals: %d", precision)
        return TokenMeta(precision=precision)

    async def read_balance(self, holder_address: Optional[str] = None) -> int:
        """Token balance of the holder (the distributor by default) in indivisible units."""
        holder = Web3.to_checksum_address(holder_address or self.config.distributor)
        data = encode_call(BALANCE_OF_SIGNATURE, ["address"], [holder])
        try:
            raw = await self._call(self.config.token, data)
            (balance,) = decode(["uint256"], raw)
        except ProviderRpcError as e:
            raise NetworkUnavailable(f"could not read balance of {holder}: {e.message}")
        except (DecodingError, ValueError) as e:
            raise NetworkUnavailable(f"unexpected balanceOf answer for {holder}: {e}")
        return balance

    # ── Distribution ────────────────────────────────────────────

    async def submit_distribution(
        self,
        sender: str,
        recipients: Sequence[str],
        amounts: Sequence[int],
    ) -> DistributionReceipt:
        """
        Send exactly one distribute transaction from ``sender``.

        Suspends for as long as the wallet's signing prompt stays open.
        """
        if len(recipients) != len(amounts):
            raise LengthMismatch(
                f"{len(recipients)} recipients but {len(amounts)} amounts"
            )
        if not recipients:
            raise ValueError("nothing to distribute")

        data = encode_call(
            DISTRIBUTE_SIGNATURE,
            ["address[]", "uint256[]"],
            [list(recipients), list(amounts)],
        )
        tx = {"from": sender, "to": self.config.distributor, "data": data}

        logger.info("Submitting distribution to %d recipients via %s",
                    len(recipients), shorten_address(self.config.distributor))
        try:
            tx_hash = await self.provider.request("eth_sendTransaction", [tx])
        except ProviderRpcError as e:
            if e.user_rejected:
                raise SubmissionRejected("transaction signature was declined")
            raise SubmissionRejected(f"the ledger refused the transaction: {e.message}")

        if not tx_hash:
            raise SubmissionRejected("the wallet returned no transaction hash")

        logger.info("Distribution submitted: %s", tx_hash)
        return DistributionReceipt(request_id=str(tx_hash), recipient_count=len(recipients))

    async def await_confirmation(self, receipt: DistributionReceipt) -> DistributionReceipt:
        """
        Suspend until the ledger reports the transaction settled.

        Waits with web3's wait_for_transaction_receipt and no timeout, looking
        the receipt up every ``confirmation_poll_interval`` seconds. A failed
        lookup says nothing about the transaction, so the receipt stays
        pending and the wait goes on. The transaction itself is never resent.
        """
        interval = self.config.confirmation_poll_interval
        while True:
            try:
                result = await self.web3.eth.wait_for_transaction_receipt(
                    receipt.request_id, timeout=None, poll_latency=interval
                )
                break
            except Web3RPCError as e:
                logger.warning("Receipt lookup for %s failed (%s); still waiting",
                               receipt.request_id, e)
                await asyncio.sleep(interval)

        block = result.get("blockNumber")
        if result.get("status", 1) == 1:
            receipt.settle(ReceiptStatus.CONFIRMED, block=block)
            logger.info("Distribution %s confirmed in block %s", receipt.request_id, block)
        else:
            receipt.settle(ReceiptStatus.FAILED, block=block, error="transaction reverted")
            logger.warning("Distribution %s reverted in block %s", receipt.request_id, block)
        return receipt
