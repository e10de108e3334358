"""Shared fakes: an in-memory program + RPC so the keeper runs against real PDAs and layouts."""

import struct
from types import SimpleNamespace

import pytest
from solders.pubkey import Pubkey

from accounts import (
    CONFIG_DISCRIMINATOR,
    ROUND_DISCRIMINATOR,
    Outcome,
    RoundReader,
    config_address,
    round_address,
    urim_vault_address,
    vault_address,
)
from errors import OracleUnavailable
from executor import Asset, TxResult
from keeper import RoundKeeper

PROGRAM_ID = Pubkey.from_string("5KqMaQLoKhBYcHD1qWZVcQqu5pmTvMitDUEqmKsqBTQg")
NOW = 1_760_000_000

_OUTCOME_TAGS = {Outcome.PENDING: 0, Outcome.UP: 1, Outcome.DOWN: 2, Outcome.DRAW: 3}


def encode_config(current_round_id, admin=None, treasury=None, paused=False, bump=255):
    return CONFIG_DISCRIMINATOR + struct.pack(
        "<32s32s?QB",
        bytes(admin or Pubkey.default()),
        bytes(treasury or Pubkey.default()),
        paused,
        current_round_id,
        bump,
    )


def encode_round(
    round_id,
    locked_price=14000,
    final_price=0,
    end_time=NOW,
    up_pool=0,
    down_pool=0,
    total_fees=0,
    up_pool_urim=0,
    down_pool_urim=0,
    total_fees_urim=0,
    resolved=False,
    outcome=Outcome.PENDING,
    fees_collected=None,
):
    body = struct.pack(
        "<QQQqqqQQQQQQQQQ?BBBB",
        round_id, locked_price, final_price,
        end_time - 180, end_time - 180, end_time,
        up_pool, down_pool, total_fees,
        up_pool_urim, down_pool_urim, total_fees_urim,
        0, 0, 0,
        resolved, _OUTCOME_TAGS[outcome], 254, 253, 252,
    )
    if fees_collected is not None:
        body += bytes([1 if fees_collected else 0])
    return ROUND_DISCRIMINATOR + body


def encode_token_account(amount, mint=None, owner=None):
    return bytes(mint or Pubkey.default()) + bytes(owner or Pubkey.default()) + struct.pack("<Q", amount) + bytes(93)


class FakeRpc:
    """Answers get_account_info from a dict keyed by address string."""

    def __init__(self):
        self.accounts = {}
        self.reads = 0
        self.error = None

    async def get_account_info(self, address, commitment=None):
        self.reads += 1
        if self.error is not None:
            raise self.error
        data = self.accounts.get(str(address))
        return SimpleNamespace(value=None if data is None else SimpleNamespace(data=data))


class FakeChain:
    """
    Stand-in for the program and the executor: mutating calls are recorded
    and applied with the program's own rules (one-way resolve, counter bump,
    on-chain outcome comparison).
    """

    def __init__(self, now=NOW, current_round_id=0, paused=False):
        self.rpc = FakeRpc()
        self.now = now
        self.current_round_id = current_round_id
        self.paused = paused
        self.rounds = {}
        self.calls = []
        self.fail = set()
        self.vaults = {}
        self.treasury = {Asset.USDC: Pubkey.new_unique(), Asset.URIM: Pubkey.new_unique()}
        self.treasury_balances = {}
        self._sync()

    def _sync(self):
        self.rpc.accounts.clear()
        self.rpc.accounts[str(config_address(PROGRAM_ID))] = encode_config(
            self.current_round_id, paused=self.paused
        )
        for rid, fields in self.rounds.items():
            self.rpc.accounts[str(round_address(PROGRAM_ID, rid))] = encode_round(rid, **fields)
        for (rid, asset), amount in self.vaults.items():
            vault = vault_address if asset == Asset.USDC else urim_vault_address
            self.rpc.accounts[str(vault(PROGRAM_ID, rid))] = encode_token_account(amount)
        for asset, amount in self.treasury_balances.items():
            self.rpc.accounts[str(self.treasury[asset])] = encode_token_account(amount)

    def add_round(self, round_id, **fields):
        self.rounds[round_id] = fields
        self.current_round_id = max(self.current_round_id, round_id + 1)
        self._sync()

    def drop_round(self, round_id):
        self.rounds.pop(round_id, None)
        self._sync()

    def set_vault(self, round_id, asset, amount):
        self.vaults[(round_id, asset)] = amount
        self._sync()

    @property
    def labels(self):
        return [c[0] for c in self.calls]

    # ---------------- executor interface ----------------
    def treasury_account(self, asset):
        return self.treasury[asset]

    async def start_round(self, next_round_id, locked_price, duration_seconds):
        self.calls.append(("start_round", next_round_id, locked_price, duration_seconds))
        if "start_round" in self.fail:
            return TxResult("start_round", False, error="start rejected")
        assert next_round_id == self.current_round_id
        self.rounds[next_round_id] = dict(locked_price=locked_price, end_time=self.now + duration_seconds)
        self.current_round_id += 1
        self._sync()
        return TxResult("start_round", True, signature=f"sig-start-{next_round_id}")

    async def resolve_round(self, round_id, final_price):
        self.calls.append(("resolve_round", round_id, final_price))
        r = self.rounds[round_id]
        if "resolve_round" in self.fail or r.get("resolved") or self.now < r.get("end_time", NOW):
            return TxResult(
                "resolve_round", False, error="custom program error: 0x1771",
                logs=["Program log: AnchorError occurred", "Program log: Error Code: RoundNotEnded"],
            )
        locked = r.get("locked_price", 14000)
        if final_price > locked:
            outcome = Outcome.UP
        elif final_price < locked:
            outcome = Outcome.DOWN
        else:
            outcome = Outcome.DRAW
        r.update(resolved=True, final_price=final_price, outcome=outcome)
        self._sync()
        return TxResult("resolve_round", True, signature=f"sig-resolve-{round_id}")

    async def collect_fees(self, round_id, asset=Asset.USDC):
        self.calls.append(("collect_fees", round_id, asset))
        if "collect_fees" in self.fail:
            return TxResult(f"collect_fees_{asset.value}", False, error="collect rejected")
        key = "total_fees" if asset == Asset.USDC else "total_fees_urim"
        fees = self.rounds[round_id].get(key, 0)
        self.treasury_balances[asset] = self.treasury_balances.get(asset, 0) + fees
        self.rounds[round_id][key] = 0
        self._sync()
        return TxResult(f"collect_fees_{asset.value}", True, signature=f"sig-fees-{round_id}")


class FakeOracle:
    def __init__(self, price=14500):
        self.price = price
        self.error = None
        self.calls = 0

    async def fetch_price(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.price


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def keeper(chain, oracle):
    return RoundKeeper(
        oracle,
        RoundReader(chain.rpc, PROGRAM_ID),
        chain,
        round_duration_seconds=180,
        clock=lambda: chain.now,
    )


@pytest.fixture
def oracle_down():
    return OracleUnavailable("Price fetch failed: connection refused")
