# keeper.py
"""
Round Keeper — lifecycle driver.

Each tick re-derives the next action purely from on-chain state:

    round missing                 -> start new round
    open and now <  end_time      -> nothing (log time left + pools)
    open and now >= end_time      -> resolve, then collect fees, then start
    resolved                      -> start new round

Nothing is carried between ticks, so a restart at any point resumes
correctly. Idempotency comes from the program's one-way transitions.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solders.keypair import Keypair

from accounts import URIM_DECIMALS, USDC_DECIMALS, Outcome, Round, RoundReader, to_ui_amount
from config import NetworkAddresses, Settings, load_admin_keypair
from errors import KeeperError, OracleUnavailable
from executor import ActionExecutor, Asset
from oracle import PythOracle

logger = logging.getLogger(__name__)


class KeeperAction(str, Enum):
    RESOLVE = "resolve"
    COLLECT_FEES = "collect_fees"
    START_ROUND = "start_round"


class FeeStatus(str, Enum):
    SKIPPED = "skipped"
    COLLECTED = "collected"
    FAILED = "failed"


@dataclass
class FeeCollection:
    round_id: int
    asset: Asset
    status: FeeStatus
    reason: Optional[str] = None
    signature: Optional[str] = None
    amount: int = 0


@dataclass
class TickReport:
    started_at: float
    round_id: Optional[int] = None
    state: Optional[str] = None          # missing | active | expired | resolved
    actions: List[KeeperAction] = field(default_factory=list)
    resolved: Optional[bool] = None
    outcome: Optional[Outcome] = None
    started_round_id: Optional[int] = None
    fees: List[FeeCollection] = field(default_factory=list)
    error: Optional[str] = None
    finished_at: Optional[float] = None

    def as_dict(self) -> dict:
        return asdict(self)


# =========================================================
# Context
# =========================================================
@dataclass
class KeeperContext:
    """Everything a keeper needs, built once at startup and passed explicitly."""
    settings: Settings
    addresses: NetworkAddresses
    admin: Keypair
    client: AsyncClient
    oracle: PythOracle
    reader: RoundReader
    executor: ActionExecutor

    @classmethod
    def from_settings(cls, settings: Settings) -> "KeeperContext":
        addresses = settings.network_addresses()
        admin = load_admin_keypair(settings)
        client = AsyncClient(settings.rpc_url, commitment=Confirmed)
        return cls(
            settings=settings,
            addresses=addresses,
            admin=admin,
            client=client,
            oracle=PythOracle(
                settings.PYTH_HERMES_URL,
                settings.PYTH_FEED_ID,
                timeout=settings.ORACLE_TIMEOUT_SECONDS,
            ),
            reader=RoundReader(client, addresses.program_id),
            executor=ActionExecutor(
                client, admin, addresses.program_id, addresses.usdc_mint, addresses.urim_mint
            ),
        )

    async def aclose(self) -> None:
        await self.oracle.aclose()
        await self.client.close()


# =========================================================
# Driver
# =========================================================
class RoundKeeper:
    def __init__(
        self,
        oracle: PythOracle,
        reader: RoundReader,
        executor: ActionExecutor,
        round_duration_seconds: int = 180,
        auto_start_new_round: bool = True,
        auto_collect_fees: bool = True,
        clock: Callable[[], float] = time.time,
        usdc_decimals: int = USDC_DECIMALS,
        urim_decimals: int = URIM_DECIMALS,
    ) -> None:
        self.oracle = oracle
        self.reader = reader
        self.executor = executor
        self.round_duration_seconds = round_duration_seconds
        self.auto_start_new_round = auto_start_new_round
        self.auto_collect_fees = auto_collect_fees
        self.clock = clock
        self.decimals = {Asset.USDC: usdc_decimals, Asset.URIM: urim_decimals}
        self.last_report: Optional[TickReport] = None
        self._tick_lock = asyncio.Lock()

    @classmethod
    def from_context(cls, ctx: KeeperContext) -> "RoundKeeper":
        s = ctx.settings
        return cls(
            ctx.oracle,
            ctx.reader,
            ctx.executor,
            round_duration_seconds=s.ROUND_DURATION_SECONDS,
            auto_start_new_round=s.AUTO_START_NEW_ROUND,
            auto_collect_fees=s.AUTO_COLLECT_FEES,
            usdc_decimals=s.USDC_DECIMALS,
            urim_decimals=s.URIM_DECIMALS,
        )

    @property
    def busy(self) -> bool:
        return self._tick_lock.locked()

    async def run_tick(self) -> Optional[TickReport]:
        """Single-flight tick: returns None when another tick is still running."""
        if self._tick_lock.locked():
            logger.warning("Previous tick still in progress; skipping this one")
            return None
        async with self._tick_lock:
            report = await self.tick()
            self.last_report = report
            return report

    # ---------------- one tick ----------------
    async def tick(self) -> TickReport:
        now = int(self.clock())
        report = TickReport(started_at=now)
        try:
            round_id = await self.reader.get_active_round_id()
            report.round_id = round_id
            rnd = await self.reader.get_round(round_id)

            if rnd is None:
                report.state = "missing"
                logger.info("No active round found (expected #%d)", round_id)
                await self._maybe_start(report)
            elif not rnd.resolved and not rnd.is_expired(now):
                report.state = "active"
                self._log_active(round_id, rnd, now)
            elif not rnd.resolved:
                report.state = "expired"
                logger.info("Round #%d EXPIRED - Resolving...", round_id)
                await self._resolve_and_roll(report, round_id)
            else:
                report.state = "resolved"
                logger.info("Round #%d already resolved (%s)", round_id, rnd.outcome.value)
                await self._maybe_start(report)
        except Exception as e:  # the loop must survive any RPC / decode error
            report.error = str(e)
            logger.error("Tick error: %s", e, exc_info=logger.isEnabledFor(logging.DEBUG))
        report.finished_at = self.clock()
        return report

    async def _resolve_and_roll(self, report: TickReport, round_id: int) -> None:
        report.actions.append(KeeperAction.RESOLVE)
        report.resolved = await self.resolve_round(round_id)
        if not report.resolved:
            return

        try:
            updated = await self.reader.get_round(round_id)
        except Exception as e:
            logger.warning("Round #%d resolved but re-read failed: %s", round_id, e)
            updated = None
        if updated is not None:
            report.outcome = updated.outcome
            logger.info(
                "Round #%d resolved: %s (locked $%.2f -> final $%.2f)",
                round_id, updated.outcome.value,
                updated.locked_price / 100, updated.final_price / 100,
            )

        if self.auto_collect_fees:
            report.actions.append(KeeperAction.COLLECT_FEES)
            report.fees = await self.collect_all_fees(round_id)

        await self._maybe_start(report)

    async def _maybe_start(self, report: TickReport) -> None:
        if not self.auto_start_new_round:
            return
        report.actions.append(KeeperAction.START_ROUND)
        report.started_round_id = await self.start_new_round()

    def ui_amount(self, base_units: int, asset: Asset) -> float:
        return to_ui_amount(base_units, self.decimals[asset])

    def _log_active(self, round_id: int, rnd: Round, now: int) -> None:
        mins, secs = divmod(rnd.seconds_left(now), 60)
        logger.info(
            "Round #%d | %d:%02d left | UP: $%.2f | DOWN: $%.2f | UP URIM: %.2f | DOWN URIM: %.2f",
            round_id, mins, secs,
            self.ui_amount(rnd.up_pool, Asset.USDC), self.ui_amount(rnd.down_pool, Asset.USDC),
            self.ui_amount(rnd.up_pool_urim, Asset.URIM), self.ui_amount(rnd.down_pool_urim, Asset.URIM),
        )

    # ---------------- operations ----------------
    async def resolve_round(self, round_id: int) -> bool:
        try:
            price = await self.oracle.fetch_price()
        except OracleUnavailable as e:
            logger.error("Resolve failed for Round #%d: %s", round_id, e)
            return False

        logger.info("Resolving Round #%d with price: $%.2f", round_id, price / 100)
        result = await self.executor.resolve_round(round_id, price)
        if not result.ok:
            logger.error("Resolve failed for Round #%d: %s", round_id, result.error)
            for line in result.logs:
                logger.error("   %s", line)
            return False
        return True

    async def start_new_round(self) -> Optional[int]:
        """Returns the id the program assigned, or None if nothing was started."""
        try:
            price = await self.oracle.fetch_price()
            config = await self.reader.get_config()
        except KeeperError as e:
            logger.error("Start round failed: %s", e)
            return None
        if config.paused:
            logger.warning("Program is paused; not starting a new round")
            return None

        logger.info("Starting new round at $%.2f", price / 100)
        result = await self.executor.start_round(
            config.current_round_id, price, self.round_duration_seconds
        )
        if not result.ok:
            logger.error("Start round failed: %s", result.error)
            return None

        new_id = await self.reader.get_active_round_id()
        logger.info("Started Round #%d (%ss)", new_id, self.round_duration_seconds)
        return new_id

    async def collect_fees(self, round_id: int, asset: Asset = Asset.USDC) -> FeeCollection:
        """Best effort: never raises, only FAILED results are logged as warnings."""
        try:
            rnd = await self.reader.require_round(round_id)
        except Exception as e:
            logger.warning("Fee collection (%s) for Round #%d failed: %s", asset.value, round_id, e)
            return FeeCollection(round_id, asset, FeeStatus.FAILED, reason=str(e))

        amount = rnd.total_fees if asset == Asset.USDC else rnd.total_fees_urim
        if not rnd.resolved:
            return FeeCollection(round_id, asset, FeeStatus.SKIPPED, reason="round not resolved")
        if rnd.fees_collected:
            return FeeCollection(round_id, asset, FeeStatus.SKIPPED, reason="fees already collected")
        if amount <= 0:
            return FeeCollection(round_id, asset, FeeStatus.SKIPPED, reason="no fees")

        result = await self.executor.collect_fees(round_id, asset)
        if not result.ok:
            logger.warning("Fee collection (%s) for Round #%d failed: %s", asset.value, round_id, result.error)
            return FeeCollection(round_id, asset, FeeStatus.FAILED, reason=result.error, amount=amount)

        logger.info("Collected %.4f %s fees from Round #%d", self.ui_amount(amount, asset), asset.value.upper(), round_id)
        await self._log_treasury_balance(asset)
        return FeeCollection(round_id, asset, FeeStatus.COLLECTED, signature=result.signature, amount=amount)

    async def _log_treasury_balance(self, asset: Asset) -> None:
        try:
            balance = await self.reader.token_balance(self.executor.treasury_account(asset))
        except Exception as e:
            logger.warning("Could not read %s treasury balance: %s", asset.value.upper(), e)
            return
        logger.info("Treasury %s balance: %.4f", asset.value.upper(), self.ui_amount(balance, asset))

    async def collect_all_fees(self, round_id: int) -> List[FeeCollection]:
        return [await self.collect_fees(round_id, asset) for asset in (Asset.USDC, Asset.URIM)]
