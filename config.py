# config.py
"""
Round Keeper — Config
Centralized environment + constants, powered by pydantic-settings (Pydantic v2).
"""

from __future__ import annotations
import json
import os
from dataclasses import dataclass
from typing import Literal, Optional

import base58 as _b58
from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from errors import ConfigurationError

# =========================
# Network presets
# =========================
NETWORK_PRESETS = {
    "devnet": {
        "programId": "5KqMaQLoKhBYcHD1qWZVcQqu5pmTvMitDUEqmKsqBTQg",
        "usdcMint": "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU",
        "urimMint": "z9hasbeeaPU4JVb1Np9oqNbpe984J8cr5THSEGCWwpR",
        "rpc": "https://api.devnet.solana.com",
    },
    "mainnet": {
        "programId": "5KqMaQLoKhBYcHD1qWZVcQqu5pmTvMitDUEqmKsqBTQg",
        "usdcMint": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
        "urimMint": "F8W15WcpXHDthW2TyyiZJ2wMLazGc8CQ4poMNpXQpump",
        "rpc": "https://api.mainnet-beta.solana.com",
    },
}

# Pyth SOL/USD
DEFAULT_FEED_ID = "ef0d8b6fda2ceba41da15d4095d1da392a0d2f8ed0c6c7bc0f4cfac8c280b56d"


@dataclass(frozen=True)
class NetworkAddresses:
    program_id: Pubkey
    usdc_mint: Pubkey
    urim_mint: Pubkey


class Settings(BaseSettings):
    # pydantic-settings config
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="",            # read raw names (e.g., RPC_URL)
        extra="ignore",
        case_sensitive=False,
    )

    # =========================
    # App / API
    # =========================
    API_PREFIX: str = "/api"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # normalize API_PREFIX (no trailing slash; always starts with '/')
    @field_validator("API_PREFIX")
    @classmethod
    def _norm_api_prefix(cls, v: str) -> str:
        v = (v or "/api").strip()
        if not v.startswith("/"):
            v = "/" + v
        if v != "/" and v.endswith("/"):
            v = v[:-1]
        return v

    # =========================
    # Network / RPC / Admin
    # =========================
    NETWORK: Literal["devnet", "mainnet"] = "devnet"
    RPC_URL: Optional[str] = None          # falls back to the network preset
    ADMIN_TOKEN: Optional[str] = None

    # Optional JSON file {programId, usdcMint, urimMint}; individual vars win over it
    NETWORK_CONFIG_FILE: Optional[str] = None
    PROGRAM_ID: Optional[str] = None
    USDC_MINT: Optional[str] = None
    URIM_MINT: Optional[str] = None
    # display only; amounts on chain stay in base units
    USDC_DECIMALS: int = 6
    URIM_DECIMALS: int = 6

    # =========================
    # Signer
    # =========================
    # Base58-encoded secret key (64b or 32b seed); otherwise the keyfile is used
    KEEPER_PRIVATE_KEY: Optional[str] = None
    KEEPER_KEYPAIR_PATH: str = "~/.config/solana/id.json"

    # =========================
    # Oracle
    # =========================
    PYTH_HERMES_URL: str = "https://hermes.pyth.network"
    PYTH_FEED_ID: str = DEFAULT_FEED_ID
    ORACLE_TIMEOUT_SECONDS: float = 10.0

    # =========================
    # Round lifecycle
    # =========================
    ROUND_DURATION_SECONDS: int = 180
    CHECK_INTERVAL_SECONDS: float = 30.0
    AUTO_START_NEW_ROUND: bool = True
    AUTO_COLLECT_FEES: bool = True

    @field_validator("ROUND_DURATION_SECONDS", "CHECK_INTERVAL_SECONDS")
    @classmethod
    def _positive(cls, v):
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("PYTH_HERMES_URL")
    @classmethod
    def _strip_slash(cls, v: str) -> str:
        return v.rstrip("/")

    # -------------------------
    # Derived helpers
    # -------------------------
    @property
    def rpc_url(self) -> str:
        return self.RPC_URL or NETWORK_PRESETS[self.NETWORK]["rpc"]

    def network_addresses(self) -> NetworkAddresses:
        """Preset, then NETWORK_CONFIG_FILE, then individual overrides."""
        merged = dict(NETWORK_PRESETS[self.NETWORK])
        if self.NETWORK_CONFIG_FILE:
            merged.update(_read_network_file(self.NETWORK_CONFIG_FILE))
        if self.PROGRAM_ID:
            merged["programId"] = self.PROGRAM_ID
        if self.USDC_MINT:
            merged["usdcMint"] = self.USDC_MINT
        if self.URIM_MINT:
            merged["urimMint"] = self.URIM_MINT
        return NetworkAddresses(
            program_id=_parse_pubkey(merged.get("programId"), "programId"),
            usdc_mint=_parse_pubkey(merged.get("usdcMint"), "usdcMint"),
            urim_mint=_parse_pubkey(merged.get("urimMint"), "urimMint"),
        )


def load_settings(**overrides) -> Settings:
    """Build Settings, turning validation problems into ConfigurationError."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e


def _read_network_file(path: str) -> dict:
    try:
        with open(os.path.expanduser(path), "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except OSError as e:
        raise ConfigurationError(f"Config file not found: {path} ({e})") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Malformed config JSON in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must hold a JSON object")
    return data


def _parse_pubkey(value: Optional[str], label: str) -> Pubkey:
    if not value:
        raise ConfigurationError(f"{label} is not set")
    try:
        return Pubkey.from_string(str(value))
    except ValueError as e:
        raise ConfigurationError(f"{label} is not a valid public key: {value!r}") from e


# =========================
# Admin keypair
# =========================
def _kp_from_bytes(raw: bytes) -> Keypair:
    if len(raw) == 64:
        try:
            return Keypair.from_bytes(raw)
        except ValueError as e:
            raise ConfigurationError(f"Could not construct Keypair from 64-byte key: {e}") from e
    if len(raw) == 32:
        return Keypair.from_seed(raw)
    raise ConfigurationError(f"Invalid secret key length: {len(raw)} (expected 32 or 64 bytes)")


def _kp_from_base58(b58: str) -> Keypair:
    b58 = b58.strip().strip('"').strip("'")
    if not b58:
        raise ConfigurationError("Empty secret key provided")
    try:
        raw = _b58.b58decode(b58)
    except ValueError as e:
        raise ConfigurationError(f"KEEPER_PRIVATE_KEY is not valid base58: {e}") from e
    return _kp_from_bytes(raw)


def _kp_from_keyfile(path: str) -> Keypair:
    full = os.path.expanduser(path)
    try:
        with open(full, "r", encoding="utf-8") as fh:
            parsed = json.load(fh)
    except OSError as e:
        raise ConfigurationError(f"Keypair file not found: {full} ({e})") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Malformed keypair JSON in {full}: {e}") from e
    if not isinstance(parsed, list) or not all(isinstance(x, int) and 0 <= x < 256 for x in parsed):
        raise ConfigurationError(f"Keypair file {full} must hold a JSON array of bytes")
    return _kp_from_bytes(bytes(parsed))


def load_admin_keypair(settings: Settings) -> Keypair:
    """Inline KEEPER_PRIVATE_KEY wins; otherwise read KEEPER_KEYPAIR_PATH."""
    if settings.KEEPER_PRIVATE_KEY:
        return _kp_from_base58(settings.KEEPER_PRIVATE_KEY)
    return _kp_from_keyfile(settings.KEEPER_KEYPAIR_PATH)
