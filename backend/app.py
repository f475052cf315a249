from __future__ import annotations
import hmac
import logging
from dataclasses import dataclass
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from drip_config import FaucetConfig, configure_logging
from drip_intake import DripIntake
from drip_queue import RequestQueue, count_by_address
from drip_scheduler import (
    IntervalTicker,
    MonitorScheduler,
    PeriodicTask,
    SettlementPolicy,
    SettlementScheduler,
)
from erc20_issuer import IssuanceClient, build_issuer

logger = logging.getLogger(__name__)


# ---------------------------
# Wiring
# ---------------------------
@dataclass
class Faucet:
    config: FaucetConfig
    queue: RequestQueue
    intake: DripIntake
    settlement: SettlementScheduler
    monitor: MonitorScheduler

    @classmethod
    def build(cls, cfg: FaucetConfig, issuer: Optional[IssuanceClient] = None) -> "Faucet":
        if issuer is None:
            cfg.require_chain_credentials()
            issuer = build_issuer(cfg)
        queue = RequestQueue(drip_amount=cfg.drip_amount)
        return cls(
            config=cfg,
            queue=queue,
            intake=DripIntake(queue),
            settlement=SettlementScheduler(
                queue,
                issuer,
                policy=SettlementPolicy(cfg.failure_policy),
                issue_timeout_sec=cfg.issue_timeout_sec,
                history_size=cfg.settlement_history,
            ),
            monitor=MonitorScheduler(queue),
        )

    def periodic_tasks(self) -> List[PeriodicTask]:
        tasks = [
            PeriodicTask(
                "settlement",
                IntervalTicker(self.config.settlement_interval_sec),
                self.settlement.run_cycle,
            )
        ]
        if self.config.monitor_enabled:
            tasks.append(
                PeriodicTask(
                    "monitor",
                    IntervalTicker(self.config.monitor_interval_sec),
                    self.monitor.run_once,
                )
            )
        return tasks


# ---------------------------
# API models
# ---------------------------
class DripIn(BaseModel):
    # Any JSON value; intake answers 400 for anything that is not an address
    address: Any = None


class DripOut(BaseModel):
    message: str
    queued: int


class QueueOut(BaseModel):
    total: int
    addresses: Dict[str, int] = Field(default_factory=dict)


class OutcomeOut(BaseModel):
    address: str
    amount: int
    status: str                    # sent | failed | abandoned | requeued
    tx_hash: Optional[str] = None
    error: Optional[str] = None


class SettlementOut(BaseModel):
    cycle: int
    started_at: float
    finished_at: Optional[float] = None
    request_count: int
    policy: str
    ok: bool
    sent_amount: int
    dropped_amount: int
    requeued_amount: int
    outcomes: List[OutcomeOut] = Field(default_factory=list)


class SettleNowOut(BaseModel):
    skipped: bool
    report: Optional[SettlementOut] = None


class StatsOut(BaseModel):
    pending_requests: int
    requests_accepted: int
    requests_rejected: int
    settlement: Dict[str, Any]


class ConfigOut(BaseModel):
    drip_amount: int
    settlement_interval_sec: float
    monitor_interval_sec: float
    failure_policy: str
    issue_timeout_sec: float
    dry_run: bool


# ---------------------------
# App
# ---------------------------
def create_app(
    cfg: Optional[FaucetConfig] = None,
    faucet: Optional[Faucet] = None,
    run_schedulers: bool = True,
) -> FastAPI:
    """
    Build the HTTP app. Without an injected faucet, the wiring (including the
    chain connection) is built from the environment at startup.
    """
    if cfg is None:
        cfg = faucet.config if faucet is not None else FaucetConfig.from_env()

    app = FastAPI(title="Tapper Faucet")
    app.state.config = cfg
    app.state.faucet = faucet
    app.state.tasks = []

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def _startup():
        configure_logging(cfg.log_level)
        if app.state.faucet is None:
            app.state.faucet = Faucet.build(cfg)
        if run_schedulers:
            app.state.tasks = app.state.faucet.periodic_tasks()
            for task in app.state.tasks:
                task.start()
        logger.info(
            f"[app] faucet ready drip_amount={cfg.drip_amount} settle_every={cfg.settlement_interval_sec}s "
            f"monitor_every={cfg.monitor_interval_sec}s policy={cfg.failure_policy}"
        )

    @app.on_event("shutdown")
    async def _shutdown():
        for task in app.state.tasks:
            await task.stop()
        app.state.tasks = []
        faucet = app.state.faucet
        if faucet is not None and len(faucet.queue):
            logger.warning(f"[app] shutting down with {len(faucet.queue)} unsettled requests (not persisted)")

    app.include_router(_routes())
    return app


def get_faucet(req: Request) -> Faucet:
    faucet = req.app.state.faucet
    if faucet is None:
        raise HTTPException(status_code=503, detail="faucet not ready")
    return faucet


def auth_admin(req: Request, faucet: Faucet) -> None:
    # Header: Authorization: Bearer <FAUCET_ADMIN_TOKEN>
    token = faucet.config.admin_token
    if not token:
        raise HTTPException(status_code=404, detail="not found")
    auth = req.headers.get("authorization", "")
    if not auth.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="missing bearer token")
    given = auth.split(" ", 1)[1].strip()
    if not hmac.compare_digest(given.encode(), token.encode()):
        raise HTTPException(status_code=401, detail="bad admin token")


def _routes():
    router = APIRouter()

    @router.post("/drip-token", response_model=DripOut)
    def drip_token(data: DripIn, req: Request):
        faucet = get_faucet(req)
        result = faucet.intake.submit(data.address)
        if not result.accepted:
            raise HTTPException(status_code=400, detail="Invalid wallet address")
        return DripOut(message="Request added to the queue", queued=len(faucet.queue))

    @router.get("/queue", response_model=QueueOut)
    def get_queue(req: Request):
        pending = get_faucet(req).queue.snapshot()
        return QueueOut(total=len(pending), addresses=count_by_address(pending))

    @router.get("/settlements", response_model=List[SettlementOut])
    def get_settlements(req: Request, limit: int = 10):
        limit = max(1, min(int(limit), 100))
        return [SettlementOut(**r.to_dict()) for r in get_faucet(req).settlement.recent(limit)]

    @router.post("/settle", response_model=SettleNowOut)
    async def settle_now(req: Request):
        """Run one settlement cycle immediately, through the same run-lock as the timer."""
        faucet = get_faucet(req)
        auth_admin(req, faucet)
        if faucet.settlement.in_flight:
            return SettleNowOut(skipped=True)
        report = await faucet.settlement.run_cycle()
        if report is None:
            return SettleNowOut(skipped=False)
        return SettleNowOut(skipped=False, report=SettlementOut(**report.to_dict()))

    @router.get("/stats", response_model=StatsOut)
    def get_stats(req: Request):
        faucet = get_faucet(req)
        return StatsOut(
            pending_requests=len(faucet.queue),
            settlement=faucet.settlement.stats(),
            **faucet.intake.stats(),
        )

    @router.get("/config", response_model=ConfigOut)
    def get_config(req: Request):
        cfg = req.app.state.config
        return ConfigOut(
            drip_amount=cfg.drip_amount,
            settlement_interval_sec=cfg.settlement_interval_sec,
            monitor_interval_sec=cfg.monitor_interval_sec,
            failure_policy=cfg.failure_policy,
            issue_timeout_sec=cfg.issue_timeout_sec,
            dry_run=cfg.dry_run,
        )

    return router


app = create_app()


if __name__ == "__main__":
    import uvicorn

    config = app.state.config
    configure_logging(config.log_level)
    uvicorn.run(app, host=config.host, port=config.port)
