"""
Distribution orchestrator: the state machine behind one airdrop session.

    Idle -> Connecting -> Connected -> Validating -> (Connected, batch held)
         -> Normalizing -> CheckingSolvency -> Submitting
         -> AwaitingConfirmation -> Succeeded | Failed

Each stage either advances or stops with a typed failure. There is no
retry: a failed attempt keeps its batch so the operator can start a fresh
attempt deliberately. While any stage from Connecting to
AwaitingConfirmation is running, every other request is refused with
OperationInProgress.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Union

from eth_typing import ChecksumAddress
from web3 import Web3

from csv_airdrop.amounts import AmountNormalizer, format_units
from csv_airdrop.batch import Batch, BatchValidator, RawInput, ValidationResult, shorten_address
from csv_airdrop.config import AirdropConfig
from csv_airdrop.errors import (
    AirdropError,
    InsufficientFunds,
    InvalidAmount,
    NetworkUnavailable,
    NoBatchLoaded,
    NoProviderFound,
    NotConnected,
    OperationInProgress,
    PrecisionExceeded,
    SettlementFailed,
    SubmissionRejected,
)
from csv_airdrop.ledger import DistributionReceipt, LedgerGateway, ReceiptStatus, TokenMeta
from csv_airdrop.providers import Capability, ProviderRpcError, WalletProvider, select_provider

logger = logging.getLogger(__name__)


class State(Enum):
    """Orchestrator states."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    VALIDATING = "validating"
    NORMALIZING = "normalizing"
    CHECKING_SOLVENCY = "checking_solvency"
    SUBMITTING = "submitting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


BUSY_STATES = frozenset({
    State.CONNECTING,
    State.VALIDATING,
    State.NORMALIZING,
    State.CHECKING_SOLVENCY,
    State.SUBMITTING,
    State.AWAITING_CONFIRMATION,
})


class DistributionStatus(Enum):
    """How a distribution attempt ended."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"  # stopped at or after the solvency check, batch kept
    REJECTED = "rejected"  # batch unusable (normalization failed), batch cleared


@dataclass
class SessionIdentity:
    """Who is connected, and on which network."""

    connected: bool = False
    account: Optional[ChecksumAddress] = None
    network_id: Optional[int] = None

    def reset(self) -> None:
        self.connected = False
        self.account = None
        self.network_id = None


@dataclass
class SolvencyReport:
    """Demand of a batch against the distributor's balance."""

    demand: int
    balance: int
    precision: int
    recipient_count: int

    @property
    def sufficient(self) -> bool:
        return self.demand <= self.balance

    def summary(self) -> str:
        status = "SUFFICIENT" if self.sufficient else "INSUFFICIENT"
        return "\n".join([
            "=== CSV Airdrop — Solvency Check ===",
            f"Recipients: {self.recipient_count}",
            f"Token decimals: {self.precision}",
            f"Total demand: {format_units(self.demand, self.precision)} ({self.demand} units)",
            f"Distributor balance: {format_units(self.balance, self.precision)} "
            f"({self.balance} units)",
            f"Balance: {status}",
        ])


@dataclass
class DistributionOutcome:
    """Terminal report of one distribution attempt."""

    status: DistributionStatus
    receipt: Optional[DistributionReceipt] = None
    error: Optional[AirdropError] = None
    recipient_count: int = 0
    demand: int = 0
    precision: Optional[int] = None
    explorer_url: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status is DistributionStatus.SUCCEEDED

    @property
    def request_id(self) -> Optional[str]:
        return self.receipt.request_id if self.receipt else None

    def summary(self) -> str:
        lines = [
            f"=== CSV Airdrop — {self.status.value.upper()} ===",
            f"Recipients: {self.recipient_count}",
        ]
        if self.precision is not None:
            lines.append(f"Total amount: {format_units(self.demand, self.precision)}")
        lines.append(f"Duration: {self.duration_seconds:.1f}s")
        if self.request_id:
            lines.append(f"Transaction: {self.request_id}")
        if self.receipt and self.receipt.confirmed_at_block is not None:
            lines.append(f"Block: {self.receipt.confirmed_at_block}")
        if self.explorer_url:
            lines.append(f"Explorer: {self.explorer_url}")
        if self.error is not None:
            lines.append(f"Error: {self.error.message}")
        return "\n".join(lines)


@dataclass
class Diagnostics:
    """What the engine can see of its environment."""

    providers: list[str] = field(default_factory=list)
    selected_provider: Optional[str] = None
    chain_id: Optional[int] = None
    target_chain_id: Optional[int] = None
    distributor_address: str = ""
    token_address: str = ""
    state: State = State.IDLE
    session: SessionIdentity = field(default_factory=SessionIdentity)

    def summary(self) -> str:
        return "\n".join([
            "=== CSV Airdrop — Diagnostics ===",
            f"providers: {', '.join(self.providers) or '(none)'}",
            f"selected provider: {self.selected_provider or '(none)'}",
            f"chain id: {self.chain_id if self.chain_id is not None else '(unknown)'}",
            f"target chain id: {self.target_chain_id}",
            f"distributor: {self.distributor_address or '(missing)'}",
            f"token: {self.token_address or '(missing)'}",
            f"state: {self.state.value}",
            f"connected account: {self.session.account or '(none)'}",
        ])


GatewayFactory = Callable[[WalletProvider, AirdropConfig], LedgerGateway]


class DistributionOrchestrator:
    """
    Owns the session identity and the current batch, and sequences every
    ledger interaction of a distribution.

    Parameters:
        config: Engine configuration. Validated here; invalid configuration
            raises ConfigurationInvalid before anything else happens.
        providers: Wallet providers discovered by the host application.
        preferred_provider: Name of the provider to favour when several fit.
        gateway_factory: Builds the LedgerGateway for the selected provider.
    """

    def __init__(
        self,
        config: AirdropConfig,
        providers: Sequence[Optional[WalletProvider]] = (),
        preferred_provider: Optional[str] = None,
        gateway_factory: GatewayFactory = LedgerGateway,
    ):
        self.config = config.validate()
        self.providers = list(providers)
        self.preferred_provider = preferred_provider
        self._gateway_factory = gateway_factory
        self.validator = BatchValidator(self.config.max_batch_size)

        self.state = State.IDLE
        self.session = SessionIdentity()
        self.gateway: Optional[LedgerGateway] = None
        self.token_meta: Optional[TokenMeta] = None
        self.batch: Optional[Batch] = None
        self.last_outcome: Optional[DistributionOutcome] = None

        self._inflight: Optional[asyncio.Task] = None
        self._cancel_requested = False
        self._pending_receipt: Optional[DistributionReceipt] = None

    # ── State helpers ───────────────────────────────────────────

    @property
    def busy(self) -> bool:
        return self.state in BUSY_STATES

    def _transition(self, state: State) -> None:
        logger.debug("State %s -> %s", self.state.value, state.value)
        self.state = state

    def _guard(self) -> None:
        if self.busy:
            raise OperationInProgress(f"orchestrator is {self.state.value}")

    def _settled_state(self) -> State:
        return State.CONNECTED if self.session.connected else State.IDLE

    # ── Connecting ──────────────────────────────────────────────

    async def connect(self) -> SessionIdentity:
        """
        Select a provider, resolve the signing account, assert the target
        network and read token metadata. On any failure the session is
        left disconnected and the orchestrator returns to Idle.
        """
        self._guard()
        self._transition(State.CONNECTING)
        self.session.reset()
        self.gateway = None
        connected = False
        try:
            provider = select_provider(self.providers, self.preferred_provider)
            gateway = self._gateway_factory(provider, self.config)
            account = await gateway.resolve_identity()
            chain_id = await gateway.assert_network()
            self.token_meta = await gateway.read_token_meta()

            self.gateway = gateway
            self.session.connected = True
            self.session.account = account
            self.session.network_id = chain_id
            if provider.supports(Capability.EVENTS):
                provider.subscribe(self.on_accounts_changed, self.on_chain_changed)
            connected = True
        finally:
            if not connected:
                self.session.reset()
                self.token_meta = None
                self._transition(State.IDLE)

        logger.info("Connected %s on chain %d (token decimals %d%s)",
                    shorten_address(account), chain_id, self.token_meta.precision,
                    ", assumed" if self.token_meta.is_fallback else "")
        self._transition(State.CONNECTED)
        return self.session

    def on_accounts_changed(self, accounts: list[str]) -> None:
        """Wallet notification: the authorized accounts changed."""
        if not accounts:
            logger.info("Wallet disconnected all accounts")
            self.session.reset()
            if not self.busy:
                self._transition(State.IDLE)
            return
        try:
            self.session.account = Web3.to_checksum_address(accounts[0])
        except (TypeError, ValueError):
            self.session.account = None
            raise NetworkUnavailable(f"wallet reported a malformed account: {accounts[0]!r}")
        logger.info("Active account changed to %s", shorten_address(self.session.account))

    def on_chain_changed(self, chain_id: Union[int, str]) -> None:
        """Wallet notification: the active network changed."""
        try:
            self.session.network_id = chain_id if isinstance(chain_id, int) else int(chain_id, 16)
        except (TypeError, ValueError):
            self.session.network_id = None
            raise NetworkUnavailable(f"wallet reported a malformed chain id: {chain_id!r}")
        logger.info("Wallet network changed to %d", self.session.network_id)

    # ── Batch upload ────────────────────────────────────────────

    def load_batch(self, raw: RawInput, fmt: str = "csv") -> ValidationResult:
        """
        Validate an upload and make it the current batch.

        Any previous batch is discarded first, whether or not the new
        upload is valid.
        """
        self._guard()
        if not self.session.connected:
            raise NotConnected("connect a wallet before uploading a batch")

        self.batch = None
        self._transition(State.VALIDATING)
        try:
            if fmt == "json":
                result = self.validator.validate_json(raw)
            else:
                result = self.validator.validate_text(raw)
        finally:
            self._transition(State.CONNECTED)

        if result.ok:
            self.batch = result.batch
        return result

    # ── Distribution ────────────────────────────────────────────

    def _require_ready(self) -> tuple[LedgerGateway, Batch]:
        self._guard()
        if not self.session.connected or self.gateway is None:
            raise NotConnected("connect a wallet first")
        if self.batch is None:
            raise NoBatchLoaded("upload a batch first")
        return self.gateway, self.batch

    async def _precision(self, gateway: LedgerGateway) -> int:
        if self.token_meta is None or self.token_meta.is_fallback:
            self.token_meta = await gateway.read_token_meta()
        return self.token_meta.precision

    async def preview(self) -> SolvencyReport:
        """
        Normalize the current batch and compare its demand with the
        distributor's balance, without submitting anything.

        A batch that cannot be normalized is discarded, as distribute() does.
        """
        gateway, batch = self._require_ready()
        previous = self.state
        self._transition(State.NORMALIZING)
        try:
            precision = await self._precision(gateway)
            try:
                amounts = AmountNormalizer(precision).normalize_all(batch)
            except (PrecisionExceeded, InvalidAmount):
                self.batch = None
                raise
            self._transition(State.CHECKING_SOLVENCY)
            balance = await gateway.read_balance()
        finally:
            self._transition(previous)
        report = SolvencyReport(
            demand=sum(amounts),
            balance=balance,
            precision=precision,
            recipient_count=len(batch),
        )
        logger.info("Solvency preview: demand %d, balance %d", report.demand, report.balance)
        return report

    def _finish(
        self,
        status: DistributionStatus,
        started: float,
        batch: Batch,
        error: Optional[AirdropError] = None,
        demand: int = 0,
        precision: Optional[int] = None,
        receipt: Optional[DistributionReceipt] = None,
    ) -> DistributionOutcome:
        if status is DistributionStatus.SUCCEEDED:
            self.batch = None
            self._transition(State.SUCCEEDED)
        elif status is DistributionStatus.REJECTED:
            self.batch = None
            self._transition(self._settled_state())
        else:
            self._transition(State.FAILED)

        explorer_url = None
        network = self.config.target_network
        if receipt is not None and network is not None:
            explorer_url = network.explorer_tx_url(receipt.request_id)

        outcome = DistributionOutcome(
            status=status,
            receipt=receipt,
            error=error,
            recipient_count=len(batch),
            demand=demand,
            precision=precision,
            explorer_url=explorer_url,
            duration_seconds=time.time() - started,
        )
        if error is not None:
            logger.warning("Distribution %s: %s", status.value, error.message)
        self.last_outcome = outcome
        return outcome

    async def distribute(self) -> DistributionOutcome:
        """
        Run one distribution attempt for the current batch.

        Guard failures (OperationInProgress, NotConnected, NoBatchLoaded) are
        raised. Everything after that is reported through the returned
        DistributionOutcome. Unexpected exceptions leave the orchestrator in
        Failed with the batch kept, then propagate.
        """
        gateway, batch = self._require_ready()
        started = time.time()
        self._transition(State.NORMALIZING)
        try:
            return await self._distribute(gateway, batch, started)
        except BaseException:
            if self.busy:
                self._transition(State.FAILED)
            raise
        finally:
            self._inflight = None
            self._pending_receipt = None

    async def _distribute(self, gateway: LedgerGateway, batch: Batch,
                          started: float) -> DistributionOutcome:
        precision = await self._precision(gateway)
        try:
            amounts = AmountNormalizer(precision).normalize_all(batch)
        except (PrecisionExceeded, InvalidAmount) as e:
            return self._finish(DistributionStatus.REJECTED, started, batch, error=e,
                                precision=precision)

        self._transition(State.CHECKING_SOLVENCY)
        demand = sum(amounts)
        try:
            balance = await gateway.read_balance()
        except AirdropError as e:
            return self._finish(DistributionStatus.FAILED, started, batch, error=e,
                                demand=demand, precision=precision)
        logger.info("Solvency: demand %d, distributor balance %d", demand, balance)
        if demand > balance:
            return self._finish(DistributionStatus.FAILED, started, batch,
                                error=InsufficientFunds(demand, balance),
                                demand=demand, precision=precision)

        # The wallet may have moved since connecting.
        account = self.session.account
        if account is None:
            return self._finish(DistributionStatus.FAILED, started, batch,
                                error=NotConnected("no active account"),
                                demand=demand, precision=precision)
        try:
            self.session.network_id = await gateway.assert_network()
        except AirdropError as e:
            return self._finish(DistributionStatus.FAILED, started, batch, error=e,
                                demand=demand, precision=precision)

        self._transition(State.SUBMITTING)
        self._cancel_requested = False
        self._inflight = asyncio.ensure_future(
            self._submit_and_wait(gateway, account, batch.recipients, amounts)
        )
        try:
            receipt = await self._inflight
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
            pending = self._pending_receipt
            if pending is None:
                error: AirdropError = SubmissionRejected("cancelled by operator")
            else:
                error = SettlementFailed(
                    f"stopped waiting for {pending.request_id}; "
                    "the transaction may still settle"
                )
            return self._finish(DistributionStatus.FAILED, started, batch, error=error,
                                demand=demand, precision=precision, receipt=pending)
        except AirdropError as e:
            return self._finish(DistributionStatus.FAILED, started, batch, error=e,
                                demand=demand, precision=precision)

        if receipt.status is ReceiptStatus.CONFIRMED:
            return self._finish(DistributionStatus.SUCCEEDED, started, batch,
                                demand=demand, precision=precision, receipt=receipt)
        return self._finish(DistributionStatus.FAILED, started, batch,
                            error=SettlementFailed(receipt.error or "transaction failed"),
                            demand=demand, precision=precision, receipt=receipt)

    async def _submit_and_wait(
        self,
        gateway: LedgerGateway,
        account: str,
        recipients: list[ChecksumAddress],
        amounts: list[int],
    ) -> DistributionReceipt:
        receipt = await gateway.submit_distribution(account, recipients, amounts)
        self._pending_receipt = receipt
        self._transition(State.AWAITING_CONFIRMATION)
        return await gateway.await_confirmation(receipt)

    async def run(self, raw: RawInput, fmt: str = "csv") -> Union[ValidationResult, DistributionOutcome]:
        """Upload and distribute in one call. Returns the ValidationResult if the upload is rejected."""
        result = self.load_batch(raw, fmt)
        if not result.ok:
            return result
        return await self.distribute()

    def cancel(self) -> bool:
        """
        Stop an in-flight submission or confirmation wait.

        Returns False when nothing is in flight. A transaction that was
        already broadcast is not recalled; only the wait ends.
        """
        if self._inflight is None or self._inflight.done():
            return False
        logger.info("Cancelling in-flight distribution")
        self._cancel_requested = True
        self._inflight.cancel()
        return True

    # ── Diagnostics ─────────────────────────────────────────────

    async def diagnose(self) -> Diagnostics:
        """Report providers, network and configuration without changing state."""
        report = Diagnostics(
            providers=[p.name for p in self.providers if p is not None],
            target_chain_id=self.config.target_chain_id,
            distributor_address=self.config.distributor_address,
            token_address=self.config.token_address,
            state=self.state,
            session=self.session,
        )
        try:
            provider = select_provider(self.providers, self.preferred_provider)
        except NoProviderFound:
            return report
        report.selected_provider = provider.name
        try:
            chain_id = await provider.request("eth_chainId")
            report.chain_id = chain_id if isinstance(chain_id, int) else int(chain_id, 16)
        except (ProviderRpcError, TypeError, ValueError) as e:
            logger.debug("Chain id unavailable for diagnostics: %s", e)
        return report
