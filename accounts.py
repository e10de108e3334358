# accounts.py
"""
Round Keeper — on-chain state.
PDA derivation, Anchor account layouts (Config / Round) and the read-only
RoundReader used by the lifecycle driver and the admin endpoints.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solders.pubkey import Pubkey

from errors import AccountNotFound


# =========================================================
# Seeds + Anchor discriminators
# =========================================================
CONFIG_SEED = b"config"
ROUND_SEED = b"round"
VAULT_SEED = b"vault"
URIM_VAULT_SEED = b"urim_vault"

USDC_DECIMALS = 6
URIM_DECIMALS = 6


def anchor_discriminator(namespace: str, name: str) -> bytes:
    """First 8 bytes of sha256("<namespace>:<name>")."""
    return hashlib.sha256(f"{namespace}:{name}".encode()).digest()[:8]


CONFIG_DISCRIMINATOR = anchor_discriminator("account", "Config")
ROUND_DISCRIMINATOR = anchor_discriminator("account", "Round")


def round_id_bytes(round_id: int) -> bytes:
    if round_id < 0:
        raise ValueError(f"round id must be >= 0, got {round_id}")
    return int(round_id).to_bytes(8, "little")


def derive_address(program_id: Pubkey, *seeds: bytes) -> Pubkey:
    pda, _bump = Pubkey.find_program_address(list(seeds), program_id)
    return pda


def config_address(program_id: Pubkey) -> Pubkey:
    return derive_address(program_id, CONFIG_SEED)


def round_address(program_id: Pubkey, round_id: int) -> Pubkey:
    return derive_address(program_id, ROUND_SEED, round_id_bytes(round_id))


def vault_address(program_id: Pubkey, round_id: int) -> Pubkey:
    return derive_address(program_id, VAULT_SEED, round_id_bytes(round_id))


def urim_vault_address(program_id: Pubkey, round_id: int) -> Pubkey:
    return derive_address(program_id, URIM_VAULT_SEED, round_id_bytes(round_id))


def to_ui_amount(base_units: int, decimals: int = USDC_DECIMALS) -> float:
    return base_units / (10 ** decimals)


# =========================================================
# Layouts
# =========================================================
class Outcome(str, Enum):
    PENDING = "PENDING"
    UP = "UP"
    DOWN = "DOWN"
    DRAW = "DRAW"

    @classmethod
    def from_tag(cls, tag: int) -> "Outcome":
        order = (cls.PENDING, cls.UP, cls.DOWN, cls.DRAW)
        if not 0 <= tag < len(order):
            raise ValueError(f"Unknown outcome tag: {tag}")
        return order[tag]


# admin, treasury, paused, current_round_id, bump
_CONFIG_LAYOUT = struct.Struct("<32s32s?QB")

# round_id, locked_price, final_price, created_at, lock_time, end_time,
# up/down/fees (usdc), up/down/fees (urim), up/down/fees (usd),
# resolved, outcome, bump, vault_bump, urim_vault_bump
_ROUND_LAYOUT = struct.Struct("<QQQqqqQQQQQQQQQ?BBBB")


def _body(data: bytes, discriminator: bytes, layout: struct.Struct, name: str) -> bytes:
    data = bytes(data)
    if data[:8] != discriminator:
        raise ValueError(f"Account data is not a {name} account (bad discriminator)")
    body = data[8:]
    if len(body) < layout.size:
        raise ValueError(f"{name} account too short: {len(body)} < {layout.size}")
    return body


@dataclass(frozen=True)
class GlobalConfig:
    admin: Pubkey
    treasury: Pubkey
    paused: bool
    current_round_id: int
    bump: int

    @property
    def active_round_id(self) -> int:
        # the counter always points one past the active round
        return self.current_round_id - 1

    @classmethod
    def decode(cls, data: bytes) -> "GlobalConfig":
        body = _body(data, CONFIG_DISCRIMINATOR, _CONFIG_LAYOUT, "Config")
        admin, treasury, paused, current_round_id, bump = _CONFIG_LAYOUT.unpack_from(body)
        return cls(
            admin=Pubkey(admin),
            treasury=Pubkey(treasury),
            paused=paused,
            current_round_id=current_round_id,
            bump=bump,
        )


@dataclass(frozen=True)
class Round:
    round_id: int
    locked_price: int
    final_price: int
    created_at: int
    lock_time: int
    end_time: int
    up_pool: int
    down_pool: int
    total_fees: int
    up_pool_urim: int
    down_pool_urim: int
    total_fees_urim: int
    up_pool_usd: int
    down_pool_usd: int
    total_fees_usd: int
    resolved: bool
    outcome: Outcome
    bump: int
    vault_bump: int
    urim_vault_bump: int
    fees_collected: bool = False

    def seconds_left(self, now: int) -> int:
        return self.end_time - int(now)

    def is_expired(self, now: int) -> bool:
        return int(now) >= self.end_time

    @classmethod
    def decode(cls, data: bytes) -> "Round":
        body = _body(data, ROUND_DISCRIMINATOR, _ROUND_LAYOUT, "Round")
        fields = list(_ROUND_LAYOUT.unpack_from(body))
        fields[16] = Outcome.from_tag(fields[16])
        # trailing fees_collected flag exists only on newer program builds
        fees_collected = len(body) > _ROUND_LAYOUT.size and body[_ROUND_LAYOUT.size] == 1
        return cls(*fields, fees_collected=fees_collected)


# SPL token account: mint, owner, amount, ...
_TOKEN_AMOUNT = struct.Struct("<Q")
_TOKEN_AMOUNT_OFFSET = 64


def token_account_amount(data: bytes) -> int:
    data = bytes(data)
    if len(data) < _TOKEN_AMOUNT_OFFSET + _TOKEN_AMOUNT.size:
        raise ValueError(f"Token account too short: {len(data)} bytes")
    (amount,) = _TOKEN_AMOUNT.unpack_from(data, _TOKEN_AMOUNT_OFFSET)
    return amount


@dataclass(frozen=True)
class VaultBalances:
    """Base-unit balances of one round's vaults; a vault that was never created reads 0."""

    round_id: int
    usdc: int
    urim: int

    def amount(self, asset: str) -> int:
        return getattr(self, asset.value if isinstance(asset, Enum) else asset)


# =========================================================
# Reader
# =========================================================
class RoundReader:
    """Read-only view over the program's Config and Round accounts."""

    def __init__(self, client: AsyncClient, program_id: Pubkey) -> None:
        self.client = client
        self.program_id = program_id

    def config_address(self) -> Pubkey:
        return config_address(self.program_id)

    def round_address(self, round_id: int) -> Pubkey:
        return round_address(self.program_id, round_id)

    def vault_address(self, round_id: int) -> Pubkey:
        return vault_address(self.program_id, round_id)

    def urim_vault_address(self, round_id: int) -> Pubkey:
        return urim_vault_address(self.program_id, round_id)

    async def _fetch(self, address: Pubkey) -> Optional[bytes]:
        resp = await self.client.get_account_info(address, commitment=Confirmed)
        value = getattr(resp, "value", None)
        if value is None:
            return None
        return bytes(value.data)

    async def get_config(self) -> GlobalConfig:
        address = self.config_address()
        data = await self._fetch(address)
        if data is None:
            raise AccountNotFound("Config", str(address))
        return GlobalConfig.decode(data)

    async def get_active_round_id(self) -> int:
        config = await self.get_config()
        return config.active_round_id

    async def get_round(self, round_id: int) -> Optional[Round]:
        """None when the round account does not exist (no round started yet)."""
        if round_id < 0:
            return None
        data = await self._fetch(self.round_address(round_id))
        if data is None:
            return None
        return Round.decode(data)

    async def require_round(self, round_id: int) -> Round:
        rnd = await self.get_round(round_id)
        if rnd is None:
            address = str(self.round_address(round_id)) if round_id >= 0 else f"#{round_id}"
            raise AccountNotFound("Round", address)
        return rnd

    async def token_balance(self, address: Pubkey) -> int:
        """Base-unit amount held by an SPL token account, 0 when the account does not exist."""
        data = await self._fetch(address)
        if data is None:
            return 0
        return token_account_amount(data)

    async def vault_balances(self, round_id: int) -> VaultBalances:
        return VaultBalances(
            round_id=round_id,
            usdc=await self.token_balance(self.vault_address(round_id)),
            urim=await self.token_balance(self.urim_vault_address(round_id)),
        )
