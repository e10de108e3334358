"""Tests for PDA derivation, Anchor layouts and the round reader."""

import asyncio

import pytest
from solders.pubkey import Pubkey

from accounts import (
    CONFIG_DISCRIMINATOR,
    ROUND_DISCRIMINATOR,
    GlobalConfig,
    Outcome,
    Round,
    RoundReader,
    anchor_discriminator,
    config_address,
    round_address,
    round_id_bytes,
    to_ui_amount,
    token_account_amount,
    urim_vault_address,
    vault_address,
)
from errors import AccountNotFound
from executor import Asset

from conftest import NOW, PROGRAM_ID, FakeChain, encode_config, encode_round, encode_token_account


class TestDiscriminators:
    def test_account_discriminators_match_idl(self):
        assert CONFIG_DISCRIMINATOR == bytes([155, 12, 170, 224, 30, 250, 204, 130])
        assert ROUND_DISCRIMINATOR == bytes([87, 127, 165, 51, 73, 78, 116, 174])

    def test_instruction_discriminators_match_idl(self):
        assert anchor_discriminator("global", "start_round_manual") == bytes([183, 88, 98, 209, 230, 189, 204, 235])
        assert anchor_discriminator("global", "resolve_round_manual") == bytes([83, 37, 59, 217, 15, 109, 76, 204])


class TestAddresses:
    def test_round_id_bytes_little_endian(self):
        assert round_id_bytes(5) == b"\x05" + b"\x00" * 7
        assert round_id_bytes(258) == b"\x02\x01" + b"\x00" * 6

    def test_negative_round_id_rejected(self):
        with pytest.raises(ValueError):
            round_id_bytes(-1)

    def test_derivation_uses_tag_and_le_id(self):
        expected, _ = Pubkey.find_program_address([b"round", (7).to_bytes(8, "little")], PROGRAM_ID)
        assert round_address(PROGRAM_ID, 7) == expected
        expected, _ = Pubkey.find_program_address([b"urim_vault", (7).to_bytes(8, "little")], PROGRAM_ID)
        assert urim_vault_address(PROGRAM_ID, 7) == expected
        expected, _ = Pubkey.find_program_address([b"config"], PROGRAM_ID)
        assert config_address(PROGRAM_ID) == expected

    def test_derivation_is_pure_and_distinct(self):
        assert vault_address(PROGRAM_ID, 3) == vault_address(PROGRAM_ID, 3)
        addrs = {
            round_address(PROGRAM_ID, 3),
            vault_address(PROGRAM_ID, 3),
            urim_vault_address(PROGRAM_ID, 3),
            round_address(PROGRAM_ID, 4),
        }
        assert len(addrs) == 4


class TestLayouts:
    def test_decode_config(self):
        admin = Pubkey.new_unique()
        cfg = GlobalConfig.decode(encode_config(6, admin=admin, paused=True))
        assert cfg.admin == admin
        assert cfg.paused is True
        assert cfg.current_round_id == 6
        assert cfg.active_round_id == 5

    def test_decode_round(self):
        rnd = Round.decode(encode_round(
            5, locked_price=14000, final_price=14500, end_time=NOW,
            up_pool=2_000_000, down_pool=1_000_000, total_fees=30_000,
            resolved=True, outcome=Outcome.UP,
        ))
        assert rnd.round_id == 5
        assert rnd.locked_price == 14000
        assert rnd.final_price == 14500
        assert rnd.end_time == NOW
        assert rnd.up_pool == 2_000_000
        assert rnd.total_fees == 30_000
        assert rnd.resolved is True
        assert rnd.outcome == Outcome.UP
        assert rnd.urim_vault_bump == 252
        assert rnd.fees_collected is False

    def test_trailing_fees_collected_flag(self):
        assert Round.decode(encode_round(1, fees_collected=True)).fees_collected is True
        assert Round.decode(encode_round(1, fees_collected=False)).fees_collected is False

    def test_expiry_is_inclusive(self):
        rnd = Round.decode(encode_round(1, end_time=NOW))
        assert rnd.is_expired(NOW)
        assert not rnd.is_expired(NOW - 1)
        assert rnd.seconds_left(NOW - 90) == 90

    def test_wrong_discriminator(self):
        with pytest.raises(ValueError, match="not a Round"):
            Round.decode(encode_config(1))

    def test_truncated_account(self):
        with pytest.raises(ValueError, match="too short"):
            Round.decode(encode_round(1)[:60])

    def test_unknown_outcome_tag(self):
        with pytest.raises(ValueError):
            Outcome.from_tag(9)

    def test_ui_amount(self):
        assert to_ui_amount(1_500_000) == 1.5
        assert to_ui_amount(1_500_000, decimals=9) == pytest.approx(0.0015)


class TestRoundReader:
    def test_active_round_id_is_counter_minus_one(self):
        chain = FakeChain(current_round_id=6)
        reader = RoundReader(chain.rpc, PROGRAM_ID)
        assert asyncio.run(reader.get_active_round_id()) == 5

    def test_missing_round_is_none(self):
        chain = FakeChain(current_round_id=6)
        reader = RoundReader(chain.rpc, PROGRAM_ID)
        assert asyncio.run(reader.get_round(5)) is None

    def test_negative_round_skips_rpc(self):
        chain = FakeChain()
        reader = RoundReader(chain.rpc, PROGRAM_ID)
        assert asyncio.run(reader.get_round(-1)) is None
        assert chain.rpc.reads == 0

    def test_get_round(self):
        chain = FakeChain()
        chain.add_round(2, locked_price=9900)
        reader = RoundReader(chain.rpc, PROGRAM_ID)
        rnd = asyncio.run(reader.get_round(2))
        assert rnd.locked_price == 9900

    def test_require_round_raises(self):
        chain = FakeChain()
        reader = RoundReader(chain.rpc, PROGRAM_ID)
        with pytest.raises(AccountNotFound):
            asyncio.run(reader.require_round(3))

    def test_missing_config_raises(self):
        chain = FakeChain()
        chain.rpc.accounts.clear()
        reader = RoundReader(chain.rpc, PROGRAM_ID)
        with pytest.raises(AccountNotFound, match="Config"):
            asyncio.run(reader.get_config())

    def test_vault_balances(self):
        chain = FakeChain()
        chain.set_vault(3, Asset.USDC, 4_200_000)
        chain.set_vault(3, Asset.URIM, 90_000_000)
        reader = RoundReader(chain.rpc, PROGRAM_ID)
        balances = asyncio.run(reader.vault_balances(3))
        assert (balances.usdc, balances.urim) == (4_200_000, 90_000_000)
        assert balances.amount(Asset.URIM) == 90_000_000
        assert balances.amount("usdc") == 4_200_000

    def test_missing_vault_reads_zero(self):
        chain = FakeChain()
        reader = RoundReader(chain.rpc, PROGRAM_ID)
        balances = asyncio.run(reader.vault_balances(3))
        assert (balances.usdc, balances.urim) == (0, 0)


class TestTokenAccount:
    def test_amount_offset(self):
        mint = Pubkey.new_unique()
        assert token_account_amount(encode_token_account(123_456, mint=mint)) == 123_456

    def test_short_account(self):
        with pytest.raises(ValueError, match="too short"):
            token_account_amount(bytes(40))
