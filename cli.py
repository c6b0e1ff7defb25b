#!/usr/bin/env python3
"""
CSV Airdrop — CLI for one-transaction ERC-20 distributions.

Usage:
    csv-airdrop distribute --file <path> [--rpc-url <url>] [--dry-run] [--yes]
    csv-airdrop estimate --file <path> [--rpc-url <url>]
    csv-airdrop validate --file <path> [--max-batch-size <n>]
    csv-airdrop diagnose [--rpc-url <url>]
    csv-airdrop generate-template --output <path> [--format csv|json] [--count <n>]

Configuration comes from the environment (or a .env file):
    AIRDROPPER_ADDRESS, TOKEN_ADDRESS, TARGET_CHAIN_ID, MAX_BATCH_SIZE,
    RPC_URL, CONFIRMATION_POLL_INTERVAL

Examples:
    # Check a recipient list without touching the chain
    csv-airdrop validate --file recipients.csv

    # Compare the batch total with the distributor's balance
    csv-airdrop estimate --file recipients.csv --rpc-url http://127.0.0.1:8545

    # Distribute
    csv-airdrop distribute --file recipients.csv
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from decimal import Decimal
from pathlib import Path
from typing import Optional

from csv_airdrop import __version__
from csv_airdrop.batch import BatchValidator, ValidationResult, shorten_address
from csv_airdrop.config import DEFAULT_MAX_BATCH_SIZE, AirdropConfig
from csv_airdrop.errors import AirdropError, ConfigurationInvalid
from csv_airdrop.orchestrator import DistributionOrchestrator
from csv_airdrop.providers import RpcWalletProvider

BANNER = "CSV Airdrop — batch token distribution in one transaction"

# Default accounts of local dev chains (anvil / hardhat).
SAMPLE_ADDRESSES = [
    "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266",
    "0x70997970C51812dc3A010C7d01b50e0d17dc79C8",
    "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC",
    "0x90F79bf6EB2c4f870365E785982E1f101E93b906",
    "0x15d34AAf54267DB7D7c367839AAf71A00a2C6A65",
]


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_config(args: argparse.Namespace) -> AirdropConfig:
    config = AirdropConfig.from_env(args.env_file)
    if args.rpc_url:
        config = replace(config, rpc_url=args.rpc_url)
    return config


def _format_for(path: Path) -> str:
    return "json" if path.suffix.lower() == ".json" else "csv"


def _print_validation(result: ValidationResult) -> None:
    if result.ok:
        print(f"✓ {result.summary()}")
        print(result.batch.summary())
    else:
        print(f"✗ {result.summary()}")


async def _run_distribution(args: argparse.Namespace, dry_run: bool) -> int:
    try:
        config = _load_config(args)
    except ConfigurationInvalid as e:
        print(f"Configuration error: {e.message}")
        return 1

    path = Path(args.file)
    try:
        raw = path.read_bytes()
    except OSError as e:
        print(f"Error reading file: {e}")
        return 1

    provider = RpcWalletProvider(config.rpc_url)
    orchestrator = DistributionOrchestrator(config, [provider])
    try:
        session = await orchestrator.connect()
        print(f"Connected: {shorten_address(session.account)} on chain {session.network_id}")

        result = orchestrator.load_batch(raw, _format_for(path))
        _print_validation(result)
        if not result.ok:
            return 1

        report = await orchestrator.preview()
        print()
        print(report.summary())
        if dry_run or not report.sufficient:
            return 0 if report.sufficient else 1

        if not args.yes:
            answer = input(f"\nDistribute to {report.recipient_count} recipients? [y/N]: ")
            if answer.lower() not in ("y", "yes"):
                print("Aborted.")
                return 0

        print("\nSubmitting distribution (approve it in your wallet)...")
        outcome = await orchestrator.distribute()
        print()
        print(outcome.summary())
        return 0 if outcome.success else 1
    except AirdropError as e:
        print(f"Error: {e.message}")
        return 1
    finally:
        await provider.close()


def cmd_distribute(args: argparse.Namespace) -> int:
    """Validate, check solvency and distribute."""
    print(BANNER)
    return asyncio.run(_run_distribution(args, dry_run=args.dry_run))


def cmd_estimate(args: argparse.Namespace) -> int:
    """Solvency check only."""
    print(BANNER)
    return asyncio.run(_run_distribution(args, dry_run=True))


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate a recipient list offline."""
    print(BANNER)
    max_size: Optional[int] = args.max_batch_size or None
    try:
        result = BatchValidator(max_size).validate_file(args.file)
    except OSError as e:
        print(f"Error reading file: {e}")
        return 1
    _print_validation(result)
    return 0 if result.ok else 1


async def _diagnose(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
    except ConfigurationInvalid as e:
        print(f"Configuration error: {e.message}")
        return 1
    provider = RpcWalletProvider(config.rpc_url)
    try:
        report = await DistributionOrchestrator(config, [provider]).diagnose()
    finally:
        await provider.close()
    print(report.summary())
    return 0


def cmd_diagnose(args: argparse.Namespace) -> int:
    """Show providers, network and configuration."""
    print(BANNER)
    return asyncio.run(_diagnose(args))


def cmd_generate_template(args: argparse.Namespace) -> int:
    """Generate a template recipient file."""
    print(BANNER)

    count = args.count
    output = Path(args.output)

    rows = []
    for i in range(count):
        rows.append({
            "address": SAMPLE_ADDRESSES[i % len(SAMPLE_ADDRESSES)],
            "amount": str(Decimal(1) + Decimal(i) / 2),
        })

    if args.format == "json":
        with open(output, "w") as f:
            json.dump(rows, f, indent=2)
    else:
        with open(output, "w", newline="") as f:
            for r in rows:
                f.write(f"{r['address']},{r['amount']}\n")

    print(f"Generated template with {count} recipients: {output}")
    print(f"Format: {args.format.upper()}")
    print("\nEdit the file with your actual recipient addresses and amounts,")
    print(f"then run: csv-airdrop validate --file {output}")
    return 0


def _add_chain_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--rpc-url", help="JSON-RPC endpoint. Default: $RPC_URL")
    parser.add_argument("--env-file", help="Path to a .env file. Default: ./.env")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="csv-airdrop",
        description="CSV Airdrop — distribute a token to many recipients in one transaction",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", action="version", version=f"csv-airdrop {__version__}"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    distribute_parser = subparsers.add_parser(
        "distribute", help="Distribute tokens to a recipient list"
    )
    distribute_parser.add_argument(
        "--file", "-f", required=True, help="Recipient list (address,amount rows; CSV or JSON)"
    )
    distribute_parser.add_argument(
        "--dry-run", action="store_true", help="Stop after the solvency check"
    )
    distribute_parser.add_argument(
        "--yes", "-y", action="store_true", help="Skip confirmation prompt"
    )
    _add_chain_arguments(distribute_parser)

    estimate_parser = subparsers.add_parser(
        "estimate", help="Check the distributor balance against a recipient list"
    )
    estimate_parser.add_argument("--file", "-f", required=True, help="Recipient list")
    _add_chain_arguments(estimate_parser)

    validate_parser = subparsers.add_parser("validate", help="Validate a recipient list")
    validate_parser.add_argument("--file", "-f", required=True, help="Recipient list")
    validate_parser.add_argument(
        "--max-batch-size", type=int, default=DEFAULT_MAX_BATCH_SIZE,
        help=f"Row ceiling, 0 for unbounded. Default: {DEFAULT_MAX_BATCH_SIZE}",
    )

    diagnose_parser = subparsers.add_parser(
        "diagnose", help="Show provider, network and configuration state"
    )
    _add_chain_arguments(diagnose_parser)

    template_parser = subparsers.add_parser(
        "generate-template", help="Generate a template recipient file"
    )
    template_parser.add_argument(
        "--output", "-o", default="recipients.csv", help="Output file path"
    )
    template_parser.add_argument(
        "--format", choices=["csv", "json"], default="csv", help="File format"
    )
    template_parser.add_argument(
        "--count", "-c", type=int, default=5, help="Number of sample recipients"
    )

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "distribute": cmd_distribute,
        "estimate": cmd_estimate,
        "validate": cmd_validate,
        "diagnose": cmd_diagnose,
        "generate-template": cmd_generate_template,
    }

    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
