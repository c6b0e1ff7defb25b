"""Ledger gateway tests against the scripted wallet."""

import pytest
from eth_abi import decode

from conftest import (
    ACCOUNT,
    DISTRIBUTOR,
    RECIPIENT_A,
    RECIPIENT_B,
    RECIPIENT_C,
    TOKEN,
    TX_HASH,
    FakeWalletProvider,
)
from csv_airdrop.config import SEPOLIA, SEPOLIA_CHAIN_ID
from csv_airdrop.errors import (
    AuthorizationDenied,
    LengthMismatch,
    NetworkSwitchRejected,
    NetworkUnavailable,
    SubmissionRejected,
)
from csv_airdrop.ledger import (
    DEFAULT_PRECISION,
    DISTRIBUTE_SIGNATURE,
    DistributionReceipt,
    LedgerGateway,
    ReceiptStatus,
    encode_call,
)
from csv_airdrop.providers import REQUIRED_CAPABILITIES, ProviderRpcError

MAINNET = 1


class SwitchlessProvider(FakeWalletProvider):
    name = "switchless"
    capabilities = REQUIRED_CAPABILITIES


class GarbledChainProvider(FakeWalletProvider):
    async def request(self, method, params=None):
        if method == "eth_chainId":
            self.calls.append((method, params))
            return "mainnet"
        return await super().request(method, params)


@pytest.fixture
def gateway(provider, config):
    return LedgerGateway(provider, config)


def test_well_known_selectors():
    assert encode_call("decimals()") == "0x313ce567"
    assert encode_call("balanceOf(address)") == "0x70a08231"


# ── Identity ────────────────────────────────────────────────────

class TestResolveIdentity:

    @pytest.mark.asyncio
    async def test_first_account_checksummed(self, config):
        provider = FakeWalletProvider(accounts=(ACCOUNT.lower(), RECIPIENT_A))
        assert await LedgerGateway(provider, config).resolve_identity() == ACCOUNT

    @pytest.mark.asyncio
    async def test_user_refusal(self, gateway, provider):
        provider.failures["eth_requestAccounts"] = [ProviderRpcError(4001, "User rejected")]
        with pytest.raises(AuthorizationDenied):
            await gateway.resolve_identity()

    @pytest.mark.asyncio
    async def test_no_accounts(self, config):
        gateway = LedgerGateway(FakeWalletProvider(accounts=()), config)
        with pytest.raises(AuthorizationDenied):
            await gateway.resolve_identity()

    @pytest.mark.asyncio
    async def test_wallet_failure(self, gateway, provider):
        provider.failures["eth_requestAccounts"] = [ProviderRpcError(-32603, "locked")]
        with pytest.raises(NetworkUnavailable):
            await gateway.resolve_identity()

    @pytest.mark.asyncio
    async def test_malformed_account(self, config):
        gateway = LedgerGateway(FakeWalletProvider(accounts=("0xnothex",)), config)
        with pytest.raises(NetworkUnavailable, match="malformed account"):
            await gateway.resolve_identity()


# ── Network ─────────────────────────────────────────────────────

class TestAssertNetwork:

    @pytest.mark.asyncio
    async def test_already_on_target(self, gateway, provider):
        assert await gateway.assert_network() == SEPOLIA_CHAIN_ID
        assert provider.methods() == ["eth_chainId"]

    @pytest.mark.asyncio
    async def test_malformed_chain_id(self, config):
        gateway = LedgerGateway(GarbledChainProvider(), config)
        with pytest.raises(NetworkUnavailable, match="malformed chain id"):
            await gateway.assert_network()

    @pytest.mark.asyncio
    async def test_switches_to_known_chain(self, config):
        provider = FakeWalletProvider(chain_id=MAINNET, known_chains={MAINNET, SEPOLIA_CHAIN_ID})
        assert await LedgerGateway(provider, config).assert_network() == SEPOLIA_CHAIN_ID
        assert "wallet_addEthereumChain" not in provider.methods()

    @pytest.mark.asyncio
    async def test_registers_unknown_chain_then_switches(self, config):
        provider = FakeWalletProvider(chain_id=MAINNET, known_chains={MAINNET})

        assert await LedgerGateway(provider, config).assert_network() == SEPOLIA_CHAIN_ID
        assert provider.methods() == [
            "eth_chainId",
            "wallet_switchEthereumChain",
            "wallet_addEthereumChain",
            "wallet_switchEthereumChain",
            "eth_chainId",
        ]
        assert provider.calls[2][1] == [SEPOLIA.to_wallet_params()]

    @pytest.mark.asyncio
    async def test_wrapped_unrecognized_chain_error(self, config):
        provider = FakeWalletProvider(chain_id=MAINNET, known_chains={MAINNET})
        provider.failures["wallet_switchEthereumChain"] = [
            ProviderRpcError(-32603, "Internal error", {"originalError": {"code": 4902}}),
        ]
        assert await LedgerGateway(provider, config).assert_network() == SEPOLIA_CHAIN_ID
        assert "wallet_addEthereumChain" in provider.methods()

    @pytest.mark.asyncio
    async def test_switch_declined(self, config):
        provider = FakeWalletProvider(chain_id=MAINNET, known_chains={MAINNET, SEPOLIA_CHAIN_ID})
        provider.failures["wallet_switchEthereumChain"] = [ProviderRpcError(4001, "rejected")]
        with pytest.raises(NetworkSwitchRejected):
            await LedgerGateway(provider, config).assert_network()
        assert provider.chain_id == MAINNET

    @pytest.mark.asyncio
    async def test_registration_declined(self, config):
        provider = FakeWalletProvider(chain_id=MAINNET, known_chains={MAINNET})
        provider.failures["wallet_addEthereumChain"] = [ProviderRpcError(4001, "rejected")]
        with pytest.raises(NetworkSwitchRejected):
            await LedgerGateway(provider, config).assert_network()

    @pytest.mark.asyncio
    async def test_provider_cannot_switch(self, config):
        provider = SwitchlessProvider(chain_id=MAINNET)
        with pytest.raises(NetworkUnavailable):
            await LedgerGateway(provider, config).assert_network()


# ── Reads ───────────────────────────────────────────────────────

class TestReads:

    @pytest.mark.asyncio
    async def test_precision(self, config):
        meta = await LedgerGateway(FakeWalletProvider(decimals=6), config).read_token_meta()
        assert meta.precision == 6
        assert not meta.is_fallback

    @pytest.mark.asyncio
    async def test_precision_fallback(self, config):
        meta = await LedgerGateway(FakeWalletProvider(decimals=None), config).read_token_meta()
        assert meta.precision == DEFAULT_PRECISION
        assert meta.is_fallback

    @pytest.mark.asyncio
    async def test_balance_is_read_for_the_distributor_on_the_token(self, gateway, provider):
        provider.balance = 12345
        assert await gateway.read_balance() == 12345
        assert provider.balance_queries == [DISTRIBUTOR]
        assert provider.calls[-1][1][0]["to"].lower() == TOKEN

    @pytest.mark.asyncio
    async def test_balance_failure(self, gateway, provider):
        provider.failures["eth_call"] = [ProviderRpcError(-32000, "header not found")]
        with pytest.raises(NetworkUnavailable):
            await gateway.read_balance()


# ── Submission and settlement ───────────────────────────────────

class TestSubmitDistribution:

    @pytest.mark.asyncio
    async def test_one_transaction_with_pairs_in_order(self, gateway, provider):
        recipients = [RECIPIENT_C, RECIPIENT_A, RECIPIENT_B]
        amounts = [3, 1, 2]

        receipt = await gateway.submit_distribution(ACCOUNT, recipients, amounts)

        assert receipt.request_id == TX_HASH
        assert receipt.status is ReceiptStatus.PENDING
        assert receipt.recipient_count == 3
        assert len(provider.sent) == 1

        tx = provider.sent[0]
        assert tx["from"] == ACCOUNT
        assert tx["to"].lower() == DISTRIBUTOR
        selector = encode_call(DISTRIBUTE_SIGNATURE)
        assert tx["data"].startswith(selector)
        decoded_recipients, decoded_amounts = decode(
            ["address[]", "uint256[]"], bytes.fromhex(tx["data"][len(selector):])
        )
        assert [a.lower() for a in decoded_recipients] == [r.lower() for r in recipients]
        assert list(decoded_amounts) == amounts

    @pytest.mark.asyncio
    async def test_length_mismatch_sends_nothing(self, gateway, provider):
        with pytest.raises(LengthMismatch):
            await gateway.submit_distribution(ACCOUNT, [RECIPIENT_A, RECIPIENT_B], [1])
        assert provider.sent == []

    @pytest.mark.asyncio
    async def test_signature_declined(self, gateway, provider):
        provider.failures["eth_sendTransaction"] = [ProviderRpcError(4001, "User denied")]
        with pytest.raises(SubmissionRejected) as exc_info:
            await gateway.submit_distribution(ACCOUNT, [RECIPIENT_A], [1])
        assert "declined" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_ledger_refusal_carries_the_reason(self, gateway, provider):
        provider.failures["eth_sendTransaction"] = [
            ProviderRpcError(-32000, "insufficient funds for gas"),
        ]
        with pytest.raises(SubmissionRejected) as exc_info:
            await gateway.submit_distribution(ACCOUNT, [RECIPIENT_A], [1])
        assert "insufficient funds for gas" in exc_info.value.detail


class TestAwaitConfirmation:

    @pytest.mark.asyncio
    async def test_polls_until_mined(self, config):
        provider = FakeWalletProvider(pending_polls=2, block_number=777)
        receipt = DistributionReceipt(request_id=TX_HASH, recipient_count=1)

        await LedgerGateway(provider, config).await_confirmation(receipt)

        assert receipt.status is ReceiptStatus.CONFIRMED
        assert receipt.confirmed_at_block == 777
        assert provider.methods().count("eth_getTransactionReceipt") == 3
        assert "eth_sendTransaction" not in provider.methods()

    @pytest.mark.asyncio
    async def test_reverted(self, config):
        provider = FakeWalletProvider(receipt_status="0x0")
        receipt = DistributionReceipt(request_id=TX_HASH)

        await LedgerGateway(provider, config).await_confirmation(receipt)

        assert receipt.status is ReceiptStatus.FAILED
        assert receipt.error == "transaction reverted"

    @pytest.mark.asyncio
    async def test_lookup_failure_keeps_waiting(self, gateway, provider):
        provider.failures["eth_getTransactionReceipt"] = [
            ProviderRpcError(-32603, "transport error: timeout"),
            ProviderRpcError(-32603, "transport error: timeout"),
        ]
        receipt = DistributionReceipt(request_id=TX_HASH)

        await gateway.await_confirmation(receipt)

        assert receipt.status is ReceiptStatus.CONFIRMED
        assert receipt.confirmed_at_block == 4242
        assert provider.methods().count("eth_getTransactionReceipt") == 3
        assert "eth_sendTransaction" not in provider.methods()


class TestDistributionReceipt:

    def test_settles_once(self):
        receipt = DistributionReceipt(request_id=TX_HASH)
        receipt.settle(ReceiptStatus.CONFIRMED, block=1)
        with pytest.raises(RuntimeError):
            receipt.settle(ReceiptStatus.FAILED)
        assert receipt.status is ReceiptStatus.CONFIRMED

    def test_cannot_settle_to_pending(self):
        with pytest.raises(ValueError):
            DistributionReceipt(request_id=TX_HASH).settle(ReceiptStatus.PENDING)
