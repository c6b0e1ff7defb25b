"""
Shared fixtures: an in-memory wallet that answers the JSON-RPC methods the
ledger gateway uses, plus ready-made configuration and orchestrators.
"""

import asyncio
from typing import Any, Optional

import pytest
from eth_abi import encode
from eth_utils import encode_hex

from csv_airdrop.config import SEPOLIA_CHAIN_ID, AirdropConfig
from csv_airdrop.ledger import BALANCE_OF_SIGNATURE, DECIMALS_SIGNATURE, encode_call
from csv_airdrop.orchestrator import DistributionOrchestrator, State
from csv_airdrop.providers import Capability, ProviderRpcError, WalletProvider

ACCOUNT = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
RECIPIENT_A = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
RECIPIENT_B = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"
RECIPIENT_C = "0x90F79bf6EB2c4f870365E785982E1f101E93b906"
DISTRIBUTOR = "0x" + "11" * 20
TOKEN = "0x" + "22" * 20
TX_HASH = "0x" + "ab" * 32

DECIMALS_SELECTOR = encode_call(DECIMALS_SIGNATURE)
BALANCE_OF_SELECTOR = encode_call(BALANCE_OF_SIGNATURE)


class FakeWalletProvider(WalletProvider):
    """
    Scriptable wallet.

    ``failures`` maps a method name to a list of errors raised, one per call,
    before the method starts answering normally. ``send_gate`` and
    ``receipt_gate`` hold the signing prompt / settlement open until set.
    """

    name = "fake"
    capabilities = frozenset({
        Capability.ACCOUNTS,
        Capability.SEND_TRANSACTION,
        Capability.SWITCH_CHAIN,
        Capability.ADD_CHAIN,
        Capability.EVENTS,
    })

    def __init__(
        self,
        accounts: tuple = (ACCOUNT,),
        chain_id: int = SEPOLIA_CHAIN_ID,
        known_chains: Optional[set] = None,
        decimals: Optional[int] = 18,
        balance: int = 10**30,
        receipt_status: str = "0x1",
        block_number: int = 4242,
        pending_polls: int = 0,
    ):
        self.accounts = list(accounts)
        self.chain_id = chain_id
        self.known_chains = set(known_chains or {chain_id})
        self.decimals = decimals
        self.balance = balance
        self.receipt_status = receipt_status
        self.block_number = block_number
        self.pending_polls = pending_polls

        self.failures: dict[str, list[ProviderRpcError]] = {}
        self.calls: list[tuple[str, Any]] = []
        self.sent: list[dict] = []
        self.balance_queries: list[str] = []
        self.send_gate: Optional[asyncio.Event] = None
        self.receipt_gate: Optional[asyncio.Event] = None
        self.listeners: Optional[tuple] = None

    def methods(self) -> list[str]:
        return [method for method, _ in self.calls]

    def subscribe(self, on_accounts, on_chain) -> None:
        self.listeners = (on_accounts, on_chain)

    async def request(self, method: str, params: Optional[list] = None) -> Any:
        self.calls.append((method, params))
        queued = self.failures.get(method)
        if queued:
            raise queued.pop(0)

        if method == "eth_requestAccounts":
            return list(self.accounts)
        if method == "eth_chainId":
            return hex(self.chain_id)
        if method == "wallet_switchEthereumChain":
            target = int(params[0]["chainId"], 16)
            if target not in self.known_chains:
                raise ProviderRpcError(4902, "Unrecognized chain ID")
            self.chain_id = target
            return None
        if method == "wallet_addEthereumChain":
            self.known_chains.add(int(params[0]["chainId"], 16))
            return None
        if method == "eth_call":
            data = params[0]["data"]
            if data.startswith(DECIMALS_SELECTOR):
                if self.decimals is None:
                    raise ProviderRpcError(-32000, "execution reverted")
                return encode_hex(encode(["uint8"], [self.decimals]))
            if data.startswith(BALANCE_OF_SELECTOR):
                self.balance_queries.append("0x" + data[-40:])
                return encode_hex(encode(["uint256"], [self.balance]))
            raise ProviderRpcError(-32000, "unknown call")
        if method == "eth_sendTransaction":
            if self.send_gate is not None:
                await self.send_gate.wait()
            self.sent.append(params[0])
            return TX_HASH
        if method == "eth_getTransactionReceipt":
            if self.receipt_gate is not None:
                await self.receipt_gate.wait()
            if self.pending_polls > 0:
                self.pending_polls -= 1
                return None
            return {
                "transactionHash": params[0],
                "blockNumber": hex(self.block_number),
                "status": self.receipt_status,
            }
        raise ProviderRpcError(-32601, f"method {method} not found")


async def wait_for_state(orchestrator: DistributionOrchestrator, state: State) -> None:
    for _ in range(200):
        if orchestrator.state is state:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"orchestrator never reached {state}, stuck in {orchestrator.state}")


@pytest.fixture
def config() -> AirdropConfig:
    return AirdropConfig(
        distributor_address=DISTRIBUTOR,
        token_address=TOKEN,
        confirmation_poll_interval=0.001,
    )


@pytest.fixture
def provider() -> FakeWalletProvider:
    return FakeWalletProvider()


@pytest.fixture
def orchestrator(config, provider) -> DistributionOrchestrator:
    return DistributionOrchestrator(config, [provider])


@pytest.fixture
def csv_rows() -> str:
    return f"{RECIPIENT_A},1.5\n{RECIPIENT_B},2\n{RECIPIENT_C},0.25\n"
