"""
Recipient list ingestion and validation for CSV airdrops.

A batch is built from rows of ``recipient,amount`` (no header row). Every
row is checked before anything is accepted: one bad row rejects the whole
upload, because the recipients and amounts later sent to the distributor
contract are two parallel arrays that must stay positionally paired.

Supports:
- CSV text or bytes (UTF-8, optional BOM, blank lines ignored)
- JSON lists of [address, amount] pairs or {"address", "amount"} objects
- An optional ceiling on the number of rows per batch
- Duplicate recipient detection (reported, not rejected)
"""

from __future__ import annotations

import csv
import io
import json
import logging
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Optional, Union

from eth_typing import ChecksumAddress
from web3 import Web3

from csv_airdrop.amounts import parse_amount
from csv_airdrop.config import DEFAULT_MAX_BATCH_SIZE
from csv_airdrop.errors import ErrorKind, InvalidAmount

logger = logging.getLogger(__name__)

RawInput = Union[str, bytes]


def shorten_address(address: str) -> str:
    """0x1234...abcd form for logs and status lines."""
    if len(address) <= 12:
        return address
    return f"{address[:6]}...{address[-4:]}"


def is_valid_address(value: str) -> bool:
    """A 0x-prefixed 20-byte hex address; mixed case must carry a valid checksum."""
    return value[:2].lower() == "0x" and Web3.is_address(value)


@dataclass(frozen=True)
class TransferEntry:
    """One validated (recipient, amount) pair."""

    row: int  # 1-indexed data row
    recipient: ChecksumAddress
    amount_text: str

    @property
    def amount(self) -> Decimal:
        return parse_amount(self.amount_text)


@dataclass(frozen=True)
class RowError:
    """A validation problem, addressable by source row."""

    kind: ErrorKind
    detail: str
    row: Optional[int] = None
    value: str = ""

    @property
    def message(self) -> str:
        where = f"Row {self.row}: " if self.row is not None else ""
        return f"{where}{self.kind.value}: {self.detail}"


@dataclass(frozen=True)
class Batch:
    """An ordered, non-empty sequence of transfer entries."""

    entries: tuple[TransferEntry, ...]

    def __post_init__(self):
        if not self.entries:
            raise ValueError("a batch must contain at least one entry")

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[TransferEntry]:
        return iter(self.entries)

    @property
    def recipients(self) -> list[ChecksumAddress]:
        return [e.recipient for e in self.entries]

    @property
    def total(self) -> Decimal:
        """Sum of the entered amounts. For display only."""
        return sum((e.amount for e in self.entries), Decimal(0))

    def duplicate_recipients(self) -> dict[ChecksumAddress, list[int]]:
        """Recipients listed more than once, mapped to their row numbers."""
        rows: dict[ChecksumAddress, list[int]] = {}
        for entry in self.entries:
            rows.setdefault(entry.recipient, []).append(entry.row)
        return {addr: r for addr, r in rows.items() if len(r) > 1}

    def summary(self) -> str:
        lines = [
            f"Recipients: {len(self)}",
            f"Total (entered): {self.total}",
        ]
        for entry in self.entries[:5]:
            lines.append(f"  {shorten_address(entry.recipient)} -> {entry.amount_text}")
        if len(self) > 5:
            lines.append(f"  ... and {len(self) - 5} more")
        duplicates = self.duplicate_recipients()
        if duplicates:
            lines.append(f"Duplicate recipients: {len(duplicates)}")
        return "\n".join(lines)


@dataclass
class ValidationResult:
    """Outcome of validating one upload: a batch, or the errors that rejected it."""

    batch: Optional[Batch] = None
    errors: list[RowError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.batch is not None and not self.errors

    @property
    def total(self) -> Decimal:
        return self.batch.total if self.batch is not None else Decimal(0)

    def summary(self) -> str:
        if self.ok:
            return f"Parsed {len(self.batch)} rows. Total: {self.total} tokens."
        lines = [f"Rejected with {len(self.errors)} error(s):"]
        lines.extend(f"  {err.message}" for err in self.errors)
        return "\n".join(lines)


# ── Raw input parsing ───────────────────────────────────────────


def _decode(raw: RawInput) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8-sig")
    return raw.lstrip("\ufeff")


def parse_csv_rows(raw: RawInput) -> list[tuple[int, list[str]]]:
    """
    Split CSV input into (row number, fields) pairs.

    No header row is assumed. Blank lines are skipped and not counted: row
    numbers count data rows from 1, so a quoted field spanning several
    lines is still one row.
    """
    rows = []
    for fields in csv.reader(io.StringIO(_decode(raw))):
        if not fields or all(not f.strip() for f in fields):
            continue
        rows.append((len(rows) + 1, fields))
    return rows


def parse_json_rows(raw: RawInput) -> list[tuple[int, list[str]]]:
    """
    Convert a JSON recipient list into (entry number, fields) pairs.

    Expected format:
        [["0xAbC...", "10.5"], {"address": "0xDeF...", "amount": 5}]

    Numbers keep their literal text so amounts never pass through a float.
    """
    data = json.loads(_decode(raw), parse_float=str, parse_int=str)
    if not isinstance(data, list):
        raise ValueError("JSON must contain a list of recipients")

    rows = []
    for i, entry in enumerate(data, start=1):
        if isinstance(entry, dict):
            fields = [str(entry[k]) for k in ("address", "amount") if k in entry]
        elif isinstance(entry, list):
            fields = [str(v) for v in entry]
        else:
            fields = []
        rows.append((i, fields))
    return rows


# ── Validation ──────────────────────────────────────────────────


class BatchValidator:
    """
    Turns raw rows into a Batch, all-or-nothing.

    Every row is checked so the operator sees each problem at once, but a
    single error means no batch is produced.
    """

    def __init__(self, max_batch_size: Optional[int] = DEFAULT_MAX_BATCH_SIZE):
        self.max_batch_size = max_batch_size

    def _check_row(self, row: int, fields: Sequence[str]) -> Union[TransferEntry, RowError]:
        if len(fields) < 2:
            return RowError(
                ErrorKind.MALFORMED_ROW,
                f"expected 'recipient,amount', got {len(fields)} field(s)",
                row=row,
                value=",".join(fields),
            )

        recipient = fields[0].strip()
        if not is_valid_address(recipient):
            return RowError(
                ErrorKind.INVALID_ADDRESS,
                f"'{recipient}' is not a valid address",
                row=row,
                value=recipient,
            )

        amount_text = fields[1].strip()
        try:
            parse_amount(amount_text)
        except InvalidAmount as e:
            return RowError(ErrorKind.INVALID_AMOUNT, e.detail, row=row, value=amount_text)

        return TransferEntry(
            row=row,
            recipient=Web3.to_checksum_address(recipient),
            amount_text=amount_text,
        )

    def validate_rows(self, rows: Iterable[tuple[int, Sequence[str]]]) -> ValidationResult:
        rows = list(rows)
        if not rows:
            return ValidationResult(errors=[
                RowError(ErrorKind.EMPTY_BATCH, "the upload contains no rows"),
            ])
        if self.max_batch_size is not None and len(rows) > self.max_batch_size:
            return ValidationResult(errors=[
                RowError(
                    ErrorKind.BATCH_TOO_LARGE,
                    f"{len(rows)} rows exceed the limit of {self.max_batch_size}",
                ),
            ])

        entries = []
        errors = []
        for row, fields in rows:
            checked = self._check_row(row, fields)
            if isinstance(checked, RowError):
                errors.append(checked)
            else:
                entries.append(checked)

        if errors:
            logger.info("Batch rejected: %d bad row(s), first at row %s",
                        len(errors), errors[0].row)
            return ValidationResult(errors=errors)

        batch = Batch(tuple(entries))
        duplicates = batch.duplicate_recipients()
        if duplicates:
            logger.warning(
                "Batch lists %d recipient(s) more than once: %s",
                len(duplicates),
                ", ".join(
                    f"{shorten_address(a)} (rows {', '.join(map(str, r))})"
                    for a, r in duplicates.items()
                ),
            )
        logger.info("Batch accepted: %d rows, total %s", len(batch), batch.total)
        return ValidationResult(batch=batch)

    def validate_text(self, raw: RawInput) -> ValidationResult:
        try:
            rows = parse_csv_rows(raw)
        except (UnicodeDecodeError, csv.Error) as e:
            return ValidationResult(errors=[RowError(ErrorKind.MALFORMED_ROW, str(e))])
        return self.validate_rows(rows)

    def validate_json(self, raw: RawInput) -> ValidationResult:
        try:
            rows = parse_json_rows(raw)
        except ValueError as e:
            return ValidationResult(errors=[RowError(ErrorKind.MALFORMED_ROW, str(e))])
        return self.validate_rows(rows)

    def validate_file(self, filepath: Union[str, Path]) -> ValidationResult:
        """Auto-detect file format by suffix and validate its rows."""
        filepath = Path(filepath)
        raw = filepath.read_bytes()
        if filepath.suffix.lower() == ".json":
            return self.validate_json(raw)
        return self.validate_text(raw)
