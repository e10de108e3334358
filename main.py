# main.py
# =========================================================
# Round Keeper (FastAPI host)
# =========================================================
from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from solders.pubkey import Pubkey

from config import Settings, load_settings
from errors import AccountNotFound, ConfigurationError
from executor import Asset, TxResult
from keeper import FeeCollection, KeeperContext, RoundKeeper
from scheduler import keeper_loop

settings = load_settings()
API = settings.API_PREFIX

logger = logging.getLogger("keeper.main")


def configure_logging(s: Settings) -> None:
    level = logging.DEBUG if s.DEBUG else getattr(logging, s.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        stream=sys.stdout,
        force=True,
    )
    # one line per RPC call is noise at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


# =========================================================
# Lifecycle
# =========================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings)
    try:
        ctx = KeeperContext.from_settings(settings)
    except ConfigurationError as e:
        logger.critical("Configuration error: %s", e)
        raise

    keeper = RoundKeeper.from_context(ctx)
    app.state.ctx = ctx
    app.state.keeper = keeper

    logger.info("Round Keeper started")
    logger.info("   Network: %s", settings.NETWORK)
    logger.info("   RPC: %s...", settings.rpc_url[:40])
    logger.info("   Program: %s", ctx.addresses.program_id)
    logger.info("   Admin: %s", ctx.admin.pubkey())
    logger.info("   Check interval: %ss", settings.CHECK_INTERVAL_SECONDS)
    logger.info("   Round duration: %ss", settings.ROUND_DURATION_SECONDS)

    app.state.keeper_task = asyncio.create_task(
        keeper_loop(keeper, settings.CHECK_INTERVAL_SECONDS)
    )
    try:
        yield
    finally:
        task = app.state.keeper_task
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        await ctx.aclose()
        logger.info("Round Keeper stopped")


app = FastAPI(title="Round Keeper", version="0.1.0", lifespan=lifespan)

_auth_scheme = HTTPBearer(auto_error=False)


def admin_guard(creds: HTTPAuthorizationCredentials = Depends(_auth_scheme)):
    if not settings.ADMIN_TOKEN:
        # allow only if explicitly running in debug/dev
        if settings.DEBUG:
            return True
        raise HTTPException(401, "ADMIN_TOKEN required in production")
    if not creds or creds.credentials != settings.ADMIN_TOKEN:
        raise HTTPException(401, "Unauthorized")
    return True


def _keeper(request: Request) -> RoundKeeper:
    keeper = getattr(request.app.state, "keeper", None)
    if keeper is None:
        raise HTTPException(503, "Keeper not initialised")
    return keeper


# =========================================================
# Models
# =========================================================
class TxResp(BaseModel):
    label: str
    ok: bool
    signature: Optional[str] = None
    error: Optional[str] = None
    logs: List[str] = []

    @classmethod
    def of(cls, r: TxResult) -> "TxResp":
        return cls(label=r.label, ok=r.ok, signature=r.signature, error=r.error, logs=r.logs)


class FeeResp(BaseModel):
    round_id: int
    asset: str
    status: str
    reason: Optional[str] = None
    signature: Optional[str] = None
    amount: int = 0

    @classmethod
    def of(cls, f: FeeCollection) -> "FeeResp":
        return cls(
            round_id=f.round_id, asset=f.asset.value, status=f.status.value,
            reason=f.reason, signature=f.signature, amount=f.amount,
        )


class RoundCurrentResp(BaseModel):
    round_id: int
    address: str
    exists: bool
    resolved: Optional[bool] = None
    outcome: Optional[str] = None
    locked_price: Optional[int] = None
    final_price: Optional[int] = None
    end_time: Optional[int] = None
    seconds_left: Optional[int] = None
    up_pool: Optional[int] = None
    down_pool: Optional[int] = None
    up_pool_urim: Optional[int] = None
    down_pool_urim: Optional[int] = None
    total_fees: Optional[int] = None
    total_fees_urim: Optional[int] = None
    fees_collected: Optional[bool] = None


class WithdrawResp(BaseModel):
    asset: str
    amount: int
    skipped: bool = False
    label: Optional[str] = None
    ok: bool = False
    signature: Optional[str] = None
    error: Optional[str] = None
    logs: List[str] = []


class VaultsResp(BaseModel):
    round_id: int
    usdc_vault: str
    urim_vault: str
    usdc: int
    urim: int
    usdc_ui: float
    urim_ui: float


class TreasuryReq(BaseModel):
    treasury: str


# =========================================================
# Health / status
# =========================================================
@app.get(f"{API}/health")
async def health(request: Request):
    task = getattr(request.app.state, "keeper_task", None)
    keeper = getattr(request.app.state, "keeper", None)
    loop_running = bool(task is not None and not task.done())
    return {
        "ok": loop_running,
        "loop_running": loop_running,
        "tick_in_progress": bool(keeper is not None and keeper.busy),
    }


@app.get(f"{API}/status")
async def status(keeper: RoundKeeper = Depends(_keeper)):
    report = keeper.last_report
    return {
        "network": settings.NETWORK,
        "check_interval_seconds": settings.CHECK_INTERVAL_SECONDS,
        "round_duration_seconds": keeper.round_duration_seconds,
        "auto_start_new_round": keeper.auto_start_new_round,
        "auto_collect_fees": keeper.auto_collect_fees,
        "last_tick": report.as_dict() if report else None,
    }


@app.get(f"{API}/rounds/current", response_model=RoundCurrentResp)
async def rounds_current(keeper: RoundKeeper = Depends(_keeper)):
    reader = keeper.reader
    try:
        round_id = await reader.get_active_round_id()
    except AccountNotFound as e:
        raise HTTPException(404, str(e))
    address = str(reader.round_address(round_id)) if round_id >= 0 else ""
    rnd = await reader.get_round(round_id)
    if rnd is None:
        return RoundCurrentResp(round_id=round_id, address=address, exists=False)
    return RoundCurrentResp(
        round_id=round_id,
        address=address,
        exists=True,
        resolved=rnd.resolved,
        outcome=rnd.outcome.value,
        locked_price=rnd.locked_price,
        final_price=rnd.final_price,
        end_time=rnd.end_time,
        seconds_left=max(0, rnd.seconds_left(int(keeper.clock()))),
        up_pool=rnd.up_pool,
        down_pool=rnd.down_pool,
        up_pool_urim=rnd.up_pool_urim,
        down_pool_urim=rnd.down_pool_urim,
        total_fees=rnd.total_fees,
        total_fees_urim=rnd.total_fees_urim,
        fees_collected=rnd.fees_collected,
    )


@app.get(f"{API}/rounds/{{round_id}}/vaults", response_model=VaultsResp)
async def round_vaults(round_id: int, keeper: RoundKeeper = Depends(_keeper)):
    if round_id < 0:
        raise HTTPException(400, "round_id must be >= 0")
    reader = keeper.reader
    balances = await reader.vault_balances(round_id)
    return VaultsResp(
        round_id=round_id,
        usdc_vault=str(reader.vault_address(round_id)),
        urim_vault=str(reader.urim_vault_address(round_id)),
        usdc=balances.usdc,
        urim=balances.urim,
        usdc_ui=keeper.ui_amount(balances.usdc, Asset.USDC),
        urim_ui=keeper.ui_amount(balances.urim, Asset.URIM),
    )


# =========================================================
# Admin
# =========================================================
@app.post(f"{API}/admin/tick")
async def admin_tick(keeper: RoundKeeper = Depends(_keeper), auth: bool = Depends(admin_guard)):
    report = await keeper.run_tick()
    if report is None:
        raise HTTPException(409, "A tick is already in progress")
    return report.as_dict()


@app.post(f"{API}/admin/rounds/{{round_id}}/collect_fees", response_model=List[FeeResp])
async def admin_collect_fees(
    round_id: int, keeper: RoundKeeper = Depends(_keeper), auth: bool = Depends(admin_guard)
):
    if round_id < 0:
        raise HTTPException(400, "round_id must be >= 0")
    results = await keeper.collect_all_fees(round_id)
    return [FeeResp.of(f) for f in results]


@app.post(f"{API}/admin/rounds/{{round_id}}/emergency_withdraw", response_model=List[WithdrawResp])
async def admin_emergency_withdraw(
    round_id: int,
    asset: Literal["usdc", "urim", "all"] = "all",
    keeper: RoundKeeper = Depends(_keeper),
    auth: bool = Depends(admin_guard),
):
    if round_id < 0:
        raise HTTPException(400, "round_id must be >= 0")
    assets = [Asset.USDC, Asset.URIM] if asset == "all" else [Asset(asset)]
    balances = await keeper.reader.vault_balances(round_id)
    results = []
    for a in assets:
        amount = balances.amount(a)
        if amount <= 0:
            logger.info("Round #%d %s vault is empty; nothing to withdraw", round_id, a.value.upper())
            results.append(WithdrawResp(asset=a.value, amount=0, skipped=True))
            continue
        logger.warning(
            "EMERGENCY WITHDRAW %.4f %s from Round #%d", keeper.ui_amount(amount, a), a.value.upper(), round_id
        )
        r = await keeper.executor.emergency_withdraw(round_id, a)
        results.append(WithdrawResp(
            asset=a.value, amount=amount, label=r.label, ok=r.ok,
            signature=r.signature, error=r.error, logs=r.logs,
        ))
    return results


@app.post(f"{API}/admin/treasury", response_model=TxResp)
async def admin_update_treasury(
    body: TreasuryReq, keeper: RoundKeeper = Depends(_keeper), auth: bool = Depends(admin_guard)
):
    try:
        new_treasury = Pubkey.from_string(body.treasury.strip())
    except ValueError:
        raise HTTPException(400, "treasury is not a valid public key")
    return TxResp.of(await keeper.executor.update_treasury(new_treasury))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())
