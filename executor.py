# executor.py
"""
Round Keeper — instruction builders + Action Executor.

Every action maps to exactly one single-instruction transaction signed by
the admin keypair. The executor never raises: callers get a TxResult and
decide what a failure means for the tick.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import VersionedTransaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from accounts import (
    anchor_discriminator,
    config_address,
    round_address,
    urim_vault_address,
    vault_address,
)
from errors import TransactionFailed

logger = logging.getLogger(__name__)

LOG_TAIL = 5


class Asset(str, Enum):
    USDC = "usdc"
    URIM = "urim"


# =========================================================
# Instruction builders
# =========================================================
def _ix_data(name: str, args: bytes = b"") -> bytes:
    return anchor_discriminator("global", name) + args


def _ro(pubkey: Pubkey) -> AccountMeta:
    return AccountMeta(pubkey, is_signer=False, is_writable=False)


def _rw(pubkey: Pubkey) -> AccountMeta:
    return AccountMeta(pubkey, is_signer=False, is_writable=True)


def _signer(pubkey: Pubkey, writable: bool = False) -> AccountMeta:
    return AccountMeta(pubkey, is_signer=True, is_writable=writable)


def start_round_manual_ix(
    program_id: Pubkey,
    admin: Pubkey,
    next_round_id: int,
    usdc_mint: Pubkey,
    urim_mint: Pubkey,
    locked_price: int,
    duration_seconds: int,
) -> Instruction:
    """next_round_id is Config.current_round_id at submission time."""
    accounts = [
        _rw(config_address(program_id)),
        _rw(round_address(program_id, next_round_id)),
        _rw(vault_address(program_id, next_round_id)),
        _rw(urim_vault_address(program_id, next_round_id)),
        _ro(usdc_mint),
        _ro(urim_mint),
        _signer(admin, writable=True),
        _ro(TOKEN_PROGRAM_ID),
        _ro(SYSTEM_PROGRAM_ID),
    ]
    data = _ix_data("start_round_manual", struct.pack("<Qq", locked_price, duration_seconds))
    return Instruction(program_id, data, accounts)


def resolve_round_manual_ix(program_id: Pubkey, admin: Pubkey, round_id: int, final_price: int) -> Instruction:
    accounts = [
        _ro(config_address(program_id)),
        _rw(round_address(program_id, round_id)),
        _signer(admin),
    ]
    data = _ix_data("resolve_round_manual", struct.pack("<Q", final_price))
    return Instruction(program_id, data, accounts)


def _vault_transfer_ix(
    name: str, program_id: Pubkey, admin: Pubkey, round_id: int, vault: Pubkey, destination: Pubkey
) -> Instruction:
    accounts = [
        _ro(config_address(program_id)),
        _rw(round_address(program_id, round_id)),
        _rw(vault),
        _rw(destination),
        _signer(admin, writable=True),
        _ro(TOKEN_PROGRAM_ID),
    ]
    return Instruction(program_id, _ix_data(name), accounts)


def collect_fees_ix(program_id: Pubkey, admin: Pubkey, round_id: int, treasury: Pubkey) -> Instruction:
    return _vault_transfer_ix(
        "collect_fees", program_id, admin, round_id, vault_address(program_id, round_id), treasury
    )


def collect_fees_urim_ix(program_id: Pubkey, admin: Pubkey, round_id: int, treasury: Pubkey) -> Instruction:
    return _vault_transfer_ix(
        "collect_fees_urim", program_id, admin, round_id, urim_vault_address(program_id, round_id), treasury
    )


def emergency_withdraw_ix(program_id: Pubkey, admin: Pubkey, round_id: int, treasury: Pubkey) -> Instruction:
    return _vault_transfer_ix(
        "emergency_withdraw", program_id, admin, round_id, vault_address(program_id, round_id), treasury
    )


def emergency_withdraw_urim_ix(program_id: Pubkey, admin: Pubkey, round_id: int, treasury: Pubkey) -> Instruction:
    return _vault_transfer_ix(
        "emergency_withdraw_urim", program_id, admin, round_id, urim_vault_address(program_id, round_id), treasury
    )


def update_treasury_ix(program_id: Pubkey, admin: Pubkey, new_treasury: Pubkey) -> Instruction:
    accounts = [
        _rw(config_address(program_id)),
        _signer(admin),
    ]
    return Instruction(program_id, _ix_data("update_treasury", bytes(new_treasury)), accounts)


# =========================================================
# Executor
# =========================================================
@dataclass
class TxResult:
    label: str
    ok: bool
    signature: Optional[str] = None
    error: Optional[str] = None
    logs: List[str] = field(default_factory=list)


def _program_logs(exc: BaseException) -> List[str]:
    """Pull simulation logs out of a preflight failure, if the RPC sent any."""
    logs = getattr(exc, "logs", None)
    if logs:
        return [str(line) for line in logs]
    for arg in getattr(exc, "args", ()):
        data = getattr(arg, "data", None)
        logs = getattr(data, "logs", None)
        if logs:
            return [str(line) for line in logs]
    return []


class ActionExecutor:
    def __init__(
        self,
        client: AsyncClient,
        admin: Keypair,
        program_id: Pubkey,
        usdc_mint: Pubkey,
        urim_mint: Pubkey,
    ) -> None:
        self.client = client
        self.admin = admin
        self.program_id = program_id
        self.usdc_mint = usdc_mint
        self.urim_mint = urim_mint

    @property
    def admin_pubkey(self) -> Pubkey:
        return self.admin.pubkey()

    def treasury_account(self, asset: Asset) -> Pubkey:
        """Admin's associated token account for the asset's mint."""
        mint = self.usdc_mint if asset == Asset.USDC else self.urim_mint
        return get_associated_token_address(self.admin_pubkey, mint)

    # ---------------- sign + send + confirm ----------------
    async def _send(self, ix: Instruction) -> str:
        blockhash_resp = await self.client.get_latest_blockhash(commitment=Confirmed)
        message = MessageV0.try_compile(
            payer=self.admin_pubkey,
            instructions=[ix],
            address_lookup_table_accounts=[],
            recent_blockhash=blockhash_resp.value.blockhash,
        )
        tx = VersionedTransaction(message, [self.admin])

        resp = await self.client.send_transaction(
            tx, opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed)
        )
        sig = resp.value

        confirm = await self.client.confirm_transaction(
            sig,
            commitment=Confirmed,
            last_valid_block_height=blockhash_resp.value.last_valid_block_height,
        )
        statuses = getattr(confirm, "value", None) or []
        status = statuses[0] if statuses else None
        if status is not None and getattr(status, "err", None) is not None:
            raise TransactionFailed(f"Transaction {sig} failed on chain: {status.err}")
        return str(sig)

    async def submit(self, ix: Instruction, label: str) -> TxResult:
        try:
            sig = await self._send(ix)
        except Exception as e:  # RPC, transport, confirmation: all mean "did not happen"
            logs = _program_logs(e)
            logger.error("[%s] transaction failed: %s", label, e)
            return TxResult(label=label, ok=False, error=str(e), logs=logs[-LOG_TAIL:])
        logger.info("[%s] confirmed %s", label, sig)
        return TxResult(label=label, ok=True, signature=sig)

    # ---------------- actions ----------------
    async def start_round(self, next_round_id: int, locked_price: int, duration_seconds: int) -> TxResult:
        ix = start_round_manual_ix(
            self.program_id, self.admin_pubkey, next_round_id,
            self.usdc_mint, self.urim_mint, locked_price, duration_seconds,
        )
        return await self.submit(ix, "start_round")

    async def resolve_round(self, round_id: int, final_price: int) -> TxResult:
        ix = resolve_round_manual_ix(self.program_id, self.admin_pubkey, round_id, final_price)
        return await self.submit(ix, "resolve_round")

    async def collect_fees(self, round_id: int, asset: Asset = Asset.USDC) -> TxResult:
        builder = collect_fees_ix if asset == Asset.USDC else collect_fees_urim_ix
        ix = builder(self.program_id, self.admin_pubkey, round_id, self.treasury_account(asset))
        return await self.submit(ix, f"collect_fees_{asset.value}")

    async def emergency_withdraw(self, round_id: int, asset: Asset = Asset.USDC) -> TxResult:
        builder = emergency_withdraw_ix if asset == Asset.USDC else emergency_withdraw_urim_ix
        ix = builder(self.program_id, self.admin_pubkey, round_id, self.treasury_account(asset))
        return await self.submit(ix, f"emergency_withdraw_{asset.value}")

    async def update_treasury(self, new_treasury: Pubkey) -> TxResult:
        ix = update_treasury_ix(self.program_id, self.admin_pubkey, new_treasury)
        return await self.submit(ix, "update_treasury")
