from __future__ import annotations

import hmac
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import load_config
from .engine import SyncEngine
from .freshness import FORCE_REFRESH_PRIORITY
from .models import ENTITY_KINDS, FreshnessReport, KindReport
from .scheduler import QueueClosedError
from .utils import configure_logging, isoformat_utc, log_event, utc_now

logger = logging.getLogger("setlistsync.api")


class ForceRefreshRequest(BaseModel):
    entity_kind: str
    entity_id: str
    priority: int = FORCE_REFRESH_PRIORITY
    sync_type: str | None = None


class DrainRequest(BaseModel):
    max_jobs: int | None = None


def _build_engine() -> SyncEngine:
    configure_logging("setlistsync.api")
    return SyncEngine(load_config())


def _require_cron_secret(request: Request) -> None:
    secret = os.environ.get("SS_CRON_SECRET")
    if not secret:
        return
    header = request.headers.get("Authorization", "")
    if not hmac.compare_digest(header, f"Bearer {secret}"):
        raise HTTPException(status_code=401, detail="unauthorized")


def _get_engine(request: Request) -> SyncEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="engine_not_ready")
    return engine


def report_payload(report: FreshnessReport) -> dict[str, object]:
    payload = report.to_dict()
    total = report.total_entities
    payload["staleness_rate"] = round(report.stale_entities / total * 100, 1) if total else 0.0
    return payload


def create_app(engine_factory: Callable[[], SyncEngine] = _build_engine) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = engine_factory()
        engine.init(workers=engine.config.executor.background_workers)
        app.state.engine = engine
        try:
            yield
        finally:
            engine.shutdown()
            app.state.engine = None

    app = FastAPI(title="setlistsync", lifespan=lifespan)
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    @app.get("/health")
    def health() -> dict[str, object]:
        return {
            "ok": True,
            "version": _get_version(),
            "time": datetime.now(tz=timezone.utc).isoformat(),
        }

    @app.post("/api/cron/freshness", dependencies=[Depends(_require_cron_secret)])
    def cron_freshness(engine: SyncEngine = Depends(_get_engine)) -> dict[str, object]:
        try:
            report = engine.run_pass()
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.ERROR, "freshness_pass_failed", error=str(exc))
            report = FreshnessReport(timestamp=isoformat_utc(utc_now()))
            for kind in ENTITY_KINDS:
                report.add(kind, KindReport())
            report.errors.append(str(exc))
            return {"success": False, "report": report_payload(report)}
        return {"success": not report.errors, "report": report_payload(report)}

    @app.post("/api/freshness/force-refresh", dependencies=[Depends(_require_cron_secret)])
    def force_refresh(
        payload: ForceRefreshRequest,
        engine: SyncEngine = Depends(_get_engine),
    ) -> dict[str, object]:
        try:
            enqueued = engine.force_refresh(
                payload.entity_kind,
                payload.entity_id,
                priority=payload.priority,
                sync_type=payload.sync_type,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except QueueClosedError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"enqueued": enqueued}

    @app.get("/api/freshness/stats", dependencies=[Depends(_require_cron_secret)])
    def freshness_stats(engine: SyncEngine = Depends(_get_engine)) -> dict[str, object]:
        return engine.get_freshness_statistics()

    @app.get("/api/queue/stats", dependencies=[Depends(_require_cron_secret)])
    def queue_stats(engine: SyncEngine = Depends(_get_engine)) -> dict[str, object]:
        return engine.queue_stats()

    @app.get("/api/sync/runs", dependencies=[Depends(_require_cron_secret)])
    def sync_runs(
        limit: int = 50,
        status: str | None = None,
        engine: SyncEngine = Depends(_get_engine),
    ) -> list[dict[str, object]]:
        return engine.recent_runs(limit=max(1, min(limit, 500)), status=status)

    @app.post("/api/sync/drain", dependencies=[Depends(_require_cron_secret)])
    def drain(
        payload: DrainRequest | None = None,
        engine: SyncEngine = Depends(_get_engine),
    ) -> dict[str, object]:
        max_jobs = payload.max_jobs if payload else None
        processed = engine.drain(max_jobs)
        return {"processed": processed, "queue": engine.queue.stats()}

    return app


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("setlistsync")
    except Exception:  # noqa: BLE001
        return "unknown"


app = create_app()


def serve() -> None:
    import uvicorn

    uvicorn.run(
        "setlistsync.api:app",
        host=os.environ.get("SS_API_HOST", "0.0.0.0"),
        port=int(os.environ.get("SS_API_PORT", "8000")),
        proxy_headers=True,
    )
