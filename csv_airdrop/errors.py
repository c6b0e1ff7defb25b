"""
Error taxonomy for the airdrop engine.

Every failure the engine can surface carries a machine-readable kind, a
human-readable detail string and, for row-level problems, the 1-indexed
row number so the caller can point at the exact line of the upload.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Kinds of engine failure."""

    CONFIGURATION_INVALID = "ConfigurationInvalid"
    NO_PROVIDER_FOUND = "NoProviderFound"
    AUTHORIZATION_DENIED = "AuthorizationDenied"
    NETWORK_SWITCH_REJECTED = "NetworkSwitchRejected"
    NETWORK_UNAVAILABLE = "NetworkUnavailable"
    MALFORMED_ROW = "MalformedRow"
    INVALID_ADDRESS = "InvalidAddress"
    INVALID_AMOUNT = "InvalidAmount"
    PRECISION_EXCEEDED = "PrecisionExceeded"
    EMPTY_BATCH = "EmptyBatch"
    BATCH_TOO_LARGE = "BatchTooLarge"
    LENGTH_MISMATCH = "LengthMismatch"
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    SUBMISSION_REJECTED = "SubmissionRejected"
    SETTLEMENT_FAILED = "SettlementFailed"
    OPERATION_IN_PROGRESS = "OperationInProgress"
    NOT_CONNECTED = "NotConnected"
    NO_BATCH_LOADED = "NoBatchLoaded"


class AirdropError(Exception):
    """Base class for all engine failures."""

    kind: ErrorKind  # set by each subclass

    def __init__(self, detail: str, row: Optional[int] = None):
        self.detail = detail
        self.row = row
        super().__init__(self.message)

    @property
    def message(self) -> str:
        if self.row is not None:
            return f"{self.kind.value} (row {self.row}): {self.detail}"
        return f"{self.kind.value}: {self.detail}"


class ConfigurationInvalid(AirdropError):
    kind = ErrorKind.CONFIGURATION_INVALID


class NoProviderFound(AirdropError):
    kind = ErrorKind.NO_PROVIDER_FOUND


class AuthorizationDenied(AirdropError):
    kind = ErrorKind.AUTHORIZATION_DENIED


class NetworkSwitchRejected(AirdropError):
    kind = ErrorKind.NETWORK_SWITCH_REJECTED


class NetworkUnavailable(AirdropError):
    kind = ErrorKind.NETWORK_UNAVAILABLE


class MalformedRow(AirdropError):
    kind = ErrorKind.MALFORMED_ROW


class InvalidAddress(AirdropError):
    kind = ErrorKind.INVALID_ADDRESS


class InvalidAmount(AirdropError):
    kind = ErrorKind.INVALID_AMOUNT


class PrecisionExceeded(AirdropError):
    kind = ErrorKind.PRECISION_EXCEEDED


class EmptyBatch(AirdropError):
    kind = ErrorKind.EMPTY_BATCH


class BatchTooLarge(AirdropError):
    kind = ErrorKind.BATCH_TOO_LARGE


class LengthMismatch(AirdropError):
    kind = ErrorKind.LENGTH_MISMATCH


class InsufficientFunds(AirdropError):
    kind = ErrorKind.INSUFFICIENT_FUNDS

    def __init__(self, demand: int, balance: int):
        self.demand = demand
        self.balance = balance
        super().__init__(
            f"distributor holds {balance} units but the batch needs {demand}"
        )


class SubmissionRejected(AirdropError):
    kind = ErrorKind.SUBMISSION_REJECTED


class SettlementFailed(AirdropError):
    kind = ErrorKind.SETTLEMENT_FAILED


class OperationInProgress(AirdropError):
    kind = ErrorKind.OPERATION_IN_PROGRESS


class NotConnected(AirdropError):
    kind = ErrorKind.NOT_CONNECTED


class NoBatchLoaded(AirdropError):
    kind = ErrorKind.NO_BATCH_LOADED
