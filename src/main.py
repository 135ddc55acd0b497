"""Точка входа пайплайна — инициализация и запуск API + воркера."""
import asyncio
import signal
import sys
from datetime import timedelta

import httpx
import uvicorn
from loguru import logger
from openai import AsyncOpenAI
from supabase import create_client

from src.ai.enrichment import EnrichmentService
from src.api.app import create_app
from src.config import load_settings
from src.fetching.page_fetcher import PageFetcher
from src.geo.geocoder import GeocodeResolver
from src.healing.selector_healer import SelectorHealer
from src.log_sink import create_supabase_sink
from src.pipeline.circuit_breaker import CircuitBreaker, CircuitConfig
from src.pipeline.context import PipelineContext
from src.pipeline.coordinator import StageCoordinator
from src.worker.loop import run_worker
from src.worker.scheduler import create_scheduler


async def main() -> None:
    """Инициализация и запуск API + воркера."""
    settings = load_settings()

    # Логирование
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)
    logger.add("logs/pipeline.log", level="DEBUG", rotation="100 MB", retention="7 days")

    logger.info(f"Starting event pipeline worker {settings.worker_id}")

    # Supabase
    db = create_client(settings.supabase_url, settings.supabase_service_key.get_secret_value())

    # Персистить WARNING+ логи в Supabase
    logger.add(
        create_supabase_sink(db, settings.worker_id),
        level="WARNING",
        enqueue=True,
        serialize=False,
    )

    # OpenAI (без ключа: экстракция правилами, без лечения селекторов и embedding)
    openai_client: AsyncOpenAI | None = None
    if settings.ai_enabled:
        # Ретраи rate limit делает сам экстрактор
        openai_client = AsyncOpenAI(api_key=settings.openai_api_key.get_secret_value(), max_retries=0)
    else:
        logger.warning("OPENAI_API_KEY not set: rules-only extraction, selector healing disabled")

    http = httpx.AsyncClient(timeout=settings.fetch_timeout_seconds)

    breaker = CircuitBreaker(db, CircuitConfig(
        failure_threshold=settings.cb_failure_threshold,
        base_cooldown=timedelta(minutes=settings.cb_base_cooldown_minutes),
        max_cooldown=timedelta(minutes=settings.cb_max_cooldown_minutes),
    ))
    ctx = PipelineContext(
        db=db,
        settings=settings,
        breaker=breaker,
        coordinator=StageCoordinator(db, breaker, settings),
        fetcher=PageFetcher.from_settings(http, settings),
        enrichment=EnrichmentService.create(openai_client, settings.extraction_model),
        geocoder=GeocodeResolver.from_settings(db, http, settings),
        healer=SelectorHealer(
            db, openai_client, settings.healer_model, settings.healer_confidence_threshold,
        ),
        openai_client=openai_client,
    )

    # FastAPI
    app = create_app(ctx, http)
    config = uvicorn.Config(app, host="0.0.0.0", port=settings.pipeline_port, log_level="warning")
    server = uvicorn.Server(config)

    # Graceful shutdown
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_event.set)

    # APScheduler: краулинг, recovery, retry, алерты
    scheduler = create_scheduler(ctx)
    scheduler.start()
    logger.info("Scheduler started")

    logger.info(f"API server starting on port {settings.pipeline_port}")

    try:
        await asyncio.gather(
            server.serve(),
            run_worker(ctx, shutdown_event),
        )
    finally:
        scheduler.shutdown(wait=False)
        await http.aclose()
        logger.info("Pipeline stopped gracefully")


if __name__ == "__main__":
    asyncio.run(main())
