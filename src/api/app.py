"""FastAPI-приложение: healthcheck и ручное управление пайплайном."""
import hmac
import time
import uuid
from collections import defaultdict

import httpx
from fastapi import Depends, FastAPI, HTTPException, Path, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger

from src.api.schemas import (
    CircuitSummary,
    DiscoveryRunRequest,
    HealthResponse,
    OpenCircuit,
    QuarantineResponse,
    RollbackResponse,
)
from src.database import get_pipeline_stats, get_source, unquarantine_source
from src.pipeline.context import PipelineContext
from src.pipeline.fanout import DiscoveryRunResult, run_discovery

security = HTTPBearer(auto_error=False)

# Rate limiting: sliding window per IP
RATE_LIMIT_MAX_REQUESTS = 60
RATE_LIMIT_WINDOW_SECONDS = 60
_rate_limit_store: dict[str, list[float]] = defaultdict(list)


def _validate_uuid(value: str) -> None:
    """Проверить что строка — валидный UUID. Бросает 422 при ошибке."""
    try:
        uuid.UUID(value)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Invalid UUID: {value}")


def create_app(ctx: PipelineContext, http: httpx.AsyncClient) -> FastAPI:
    """Создать FastAPI-приложение с зависимостями."""
    app = FastAPI(title="Event Pipeline API", version="0.1.0")
    db = ctx.db
    settings = ctx.settings

    app.state.ctx = ctx
    app.state.http = http

    async def check_rate_limit(request: Request) -> None:
        """Простой in-memory rate limiter: sliding window per IP."""
        client_ip = request.client.host if request.client else "unknown"
        now = time.time()
        window_start = now - RATE_LIMIT_WINDOW_SECONDS

        # Очистить устаревшие записи
        timestamps = _rate_limit_store[client_ip]
        _rate_limit_store[client_ip] = [t for t in timestamps if t > window_start]

        if len(_rate_limit_store[client_ip]) >= RATE_LIMIT_MAX_REQUESTS:
            raise HTTPException(status_code=429, detail="Rate limit exceeded")

        _rate_limit_store[client_ip].append(now)

        # Периодическая очистка стухших IP (при росте store > 100 записей)
        if len(_rate_limit_store) > 100:
            stale_ips = [
                ip for ip, ts in _rate_limit_store.items()
                if not ts or ts[-1] <= window_start
            ]
            for ip in stale_ips:
                del _rate_limit_store[ip]

    async def verify_api_key(
        credentials: HTTPAuthorizationCredentials | None = Depends(security),
    ) -> None:
        """Проверка API-ключа."""
        expected = settings.pipeline_api_key.get_secret_value()
        if credentials is None or not hmac.compare_digest(
            credentials.credentials, expected
        ):
            raise HTTPException(status_code=401, detail="Invalid API key")

    guarded = [Depends(check_rate_limit), Depends(verify_api_key)]

    @app.get("/api/health", response_model=HealthResponse)
    async def health(response: Response) -> HealthResponse:
        """Healthcheck — без авторизации."""
        try:
            stages = await get_pipeline_stats(db)
            circuits = await ctx.breaker.list_open_circuits()
        except Exception as e:
            logger.error(f"[api] Health check failed: {e}")
            response.status_code = 503
            return HealthResponse(
                status="degraded", stages={}, open_circuits=[],
                fail_open_count=ctx.breaker.fail_open_count,
            )

        status = "degraded" if ctx.breaker.fail_open_count else "ok"
        return HealthResponse(
            status=status,
            stages=stages,
            open_circuits=[
                OpenCircuit(
                    source_id=c.source_id,
                    state=c.state,
                    cooldown_until=c.cooldown_until.isoformat() if c.cooldown_until else None,
                    consecutive_opens=c.consecutive_opens,
                )
                for c in circuits
            ],
            fail_open_count=ctx.breaker.fail_open_count,
        )

    @app.post(
        "/api/discovery/run", status_code=201,
        response_model=DiscoveryRunResult, dependencies=guarded,
    )
    async def discovery_run(body: DiscoveryRunRequest) -> DiscoveryRunResult:
        """Разбить discovery на задачи по муниципалитетам и запустить воркеры."""
        return await run_discovery(
            db,
            http,
            settings,
            min_population=body.min_population,
            max_municipalities=body.max_municipalities,
            municipalities=body.municipalities,
            trigger_workers=body.trigger_workers,
            batch_id=body.batch_id,
        )

    @app.get(
        "/api/sources/{source_id}/circuit",
        response_model=CircuitSummary, dependencies=guarded,
    )
    async def get_circuit(source_id: str = Path(description="UUID источника")) -> dict:
        """Текущее состояние circuit источника."""
        _validate_uuid(source_id)
        return await ctx.breaker.get_summary(source_id)

    @app.post(
        "/api/sources/{source_id}/circuit/reset",
        response_model=CircuitSummary, dependencies=guarded,
    )
    async def reset_circuit(source_id: str = Path(description="UUID источника")) -> dict:
        """Принудительно закрыть circuit."""
        _validate_uuid(source_id)
        if await get_source(db, source_id) is None:
            raise HTTPException(status_code=404, detail="Source not found")
        await ctx.breaker.reset(source_id)
        return await ctx.breaker.get_summary(source_id)

    @app.post(
        "/api/sources/{source_id}/unquarantine",
        response_model=QuarantineResponse, dependencies=guarded,
    )
    async def release_quarantine(source_id: str = Path(description="UUID источника")) -> dict:
        """Вернуть источник из карантина: сбросить причину и счётчик отказов."""
        _validate_uuid(source_id)
        row = await unquarantine_source(db, source_id)
        if row is None:
            raise HTTPException(status_code=404, detail="Source not found")
        return {
            "source_id": source_id,
            "quarantined": bool(row.get("quarantined")),
            "consecutive_failures": row.get("consecutive_failures") or 0,
            "reliability_score": row.get("reliability_score"),
        }

    @app.post(
        "/api/sources/{source_id}/selectors/rollback",
        response_model=RollbackResponse, dependencies=guarded,
    )
    async def rollback_selectors(source_id: str = Path(description="UUID источника")) -> dict:
        """Вернуть предыдущую версию селекторов."""
        _validate_uuid(source_id)
        if ctx.healer is None:
            raise HTTPException(status_code=503, detail="Selector healer is not configured")
        config = await ctx.healer.rollback(source_id)
        if config is None:
            raise HTTPException(status_code=409, detail="No previous selector version to roll back to")
        return {"source_id": source_id, "rolled_back": True, "config": config.to_db()}

    return app
