"""
Startup configuration for the airdrop engine.

Configuration is read once, from explicit arguments or from the process
environment (optionally seeded from a .env file), and validated before any
ledger traffic happens.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, replace
from typing import Optional

from dotenv import load_dotenv
from eth_typing import ChecksumAddress
from web3 import Web3

from csv_airdrop.errors import ConfigurationInvalid

logger = logging.getLogger(__name__)

# ── Defaults ────────────────────────────────────────────────────
SEPOLIA_CHAIN_ID = 11155111

# Recipients per distribute() call. Larger batches risk exceeding the
# block gas limit. None disables the ceiling.
DEFAULT_MAX_BATCH_SIZE = 200

# Seconds between receipt lookups while a distribution settles.
DEFAULT_POLL_INTERVAL = 2.0

DEFAULT_RPC_URL = "http://127.0.0.1:8545"


@dataclass(frozen=True)
class NetworkDescriptor:
    """Registration descriptor for wallet_addEthereumChain."""

    chain_id: int
    name: str
    currency_name: str
    currency_symbol: str
    currency_decimals: int = 18
    rpc_urls: tuple[str, ...] = ()
    explorer_urls: tuple[str, ...] = ()

    @property
    def chain_id_hex(self) -> str:
        return hex(self.chain_id)

    def to_wallet_params(self) -> dict:
        return {
            "chainId": self.chain_id_hex,
            "chainName": self.name,
            "nativeCurrency": {
                "name": self.currency_name,
                "symbol": self.currency_symbol,
                "decimals": self.currency_decimals,
            },
            "rpcUrls": list(self.rpc_urls),
            "blockExplorerUrls": list(self.explorer_urls),
        }

    def explorer_tx_url(self, tx_hash: str) -> Optional[str]:
        if not self.explorer_urls:
            return None
        return f"{self.explorer_urls[0].rstrip('/')}/tx/{tx_hash}"


SEPOLIA = NetworkDescriptor(
    chain_id=SEPOLIA_CHAIN_ID,
    name="Sepolia",
    currency_name="SepoliaETH",
    currency_symbol="SEP",
    currency_decimals=18,
    rpc_urls=("https://rpc.sepolia.org",),
    explorer_urls=("https://sepolia.etherscan.io",),
)

KNOWN_NETWORKS = {SEPOLIA.chain_id: SEPOLIA}


def _strip_whitespace(value: Optional[str]) -> str:
    """Remove every whitespace character, including embedded newlines."""
    return re.sub(r"\s+", "", value or "")


def _parse_max_batch_size(raw: Optional[str]) -> Optional[int]:
    text = (raw or "").strip().lower()
    if text in ("", "0", "none", "unbounded"):
        return None
    try:
        return int(text)
    except ValueError:
        raise ConfigurationInvalid(f"MAX_BATCH_SIZE must be an integer, got '{raw}'")


@dataclass(frozen=True)
class AirdropConfig:
    """Validated engine configuration."""

    distributor_address: str
    token_address: str
    target_chain_id: int = SEPOLIA_CHAIN_ID
    max_batch_size: Optional[int] = DEFAULT_MAX_BATCH_SIZE
    rpc_url: str = DEFAULT_RPC_URL
    network: Optional[NetworkDescriptor] = field(default=None)
    confirmation_poll_interval: float = DEFAULT_POLL_INTERVAL

    @property
    def distributor(self) -> ChecksumAddress:
        return Web3.to_checksum_address(self.distributor_address)

    @property
    def token(self) -> ChecksumAddress:
        return Web3.to_checksum_address(self.token_address)

    @property
    def target_network(self) -> Optional[NetworkDescriptor]:
        """Descriptor used to register the target chain with a wallet, if known."""
        if self.network is not None:
            return self.network
        return KNOWN_NETWORKS.get(self.target_chain_id)

    def validate(self) -> "AirdropConfig":
        """
        Check the configuration and return a copy with checksummed addresses.

        Raises ConfigurationInvalid on the first problem found.
        """
        for label, value in (
            ("distributor address", self.distributor_address),
            ("token address", self.token_address),
        ):
            if not value or not Web3.is_address(value):
                raise ConfigurationInvalid(f"{label} '{value}' is not a valid address")

        if isinstance(self.target_chain_id, bool) or not isinstance(self.target_chain_id, int) \
                or self.target_chain_id <= 0:
            raise ConfigurationInvalid(
                f"target chain id must be a positive integer, got {self.target_chain_id!r}"
            )
        if self.max_batch_size is not None and self.max_batch_size <= 0:
            raise ConfigurationInvalid(
                f"max batch size must be positive or unbounded, got {self.max_batch_size}"
            )
        if self.network is not None and self.network.chain_id != self.target_chain_id:
            raise ConfigurationInvalid(
                f"network descriptor is for chain {self.network.chain_id}, "
                f"target is {self.target_chain_id}"
            )
        if self.confirmation_poll_interval <= 0:
            raise ConfigurationInvalid("confirmation poll interval must be positive")

        return replace(
            self,
            distributor_address=self.distributor,
            token_address=self.token,
        )

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "AirdropConfig":
        """
        Build a validated configuration from environment variables.

        Recognized variables:
            AIRDROPPER_ADDRESS, TOKEN_ADDRESS, TARGET_CHAIN_ID,
            MAX_BATCH_SIZE, RPC_URL, CONFIRMATION_POLL_INTERVAL
        """
        load_dotenv(env_file)

        chain_raw = os.getenv("TARGET_CHAIN_ID", str(SEPOLIA_CHAIN_ID)).strip()
        try:
            chain_id = int(chain_raw, 0)
        except ValueError:
            raise ConfigurationInvalid(f"TARGET_CHAIN_ID must be an integer, got '{chain_raw}'")

        poll_raw = os.getenv("CONFIRMATION_POLL_INTERVAL", str(DEFAULT_POLL_INTERVAL)).strip()
        try:
            poll_interval = float(poll_raw)
        except ValueError:
            raise ConfigurationInvalid(
                f"CONFIRMATION_POLL_INTERVAL must be a number, got '{poll_raw}'"
            )

        config = cls(
            distributor_address=_strip_whitespace(os.getenv("AIRDROPPER_ADDRESS")),
            token_address=_strip_whitespace(os.getenv("TOKEN_ADDRESS")),
            target_chain_id=chain_id,
            max_batch_size=_parse_max_batch_size(
                os.getenv("MAX_BATCH_SIZE", str(DEFAULT_MAX_BATCH_SIZE))
            ),
            rpc_url=os.getenv("RPC_URL", DEFAULT_RPC_URL).strip(),
            confirmation_poll_interval=poll_interval,
        )
        validated = config.validate()
        logger.debug(
            "Loaded configuration: chain=%s distributor=%s token=%s max_batch=%s",
            validated.target_chain_id,
            validated.distributor_address,
            validated.token_address,
            validated.max_batch_size,
        )
        return validated
