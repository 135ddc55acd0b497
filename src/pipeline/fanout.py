"""Discovery fan-out: большой прогон discovery → задачи по муниципалитетам + запуск воркеров."""
import asyncio
import uuid

import httpx
from loguru import logger
from pydantic import BaseModel
from supabase import Client

from src.config import Settings
from src.database import run_in_thread, sanitize_error
from src.pipeline.municipalities import Municipality, select_municipalities

DISCOVERY_JOBS_TABLE = "discovery_jobs"
ACTIVE_JOB_STATUSES = ["pending", "processing"]
WORKER_TIMEOUT = 30.0


class DiscoveryRunResult(BaseModel):
    batch_id: str
    jobs_created: int = 0
    skipped: int = 0
    workers_triggered: int = 0
    workers_failed: int = 0
    municipalities: list[str] = []


async def _active_targets(db: Client) -> set[str]:
    result = await run_in_thread(
        db.table(DISCOVERY_JOBS_TABLE)
        .select("municipality")
        .in_("status", ACTIVE_JOB_STATUSES)
        .execute
    )
    return {row["municipality"].lower() for row in result.data}


def _job_row(municipality: Municipality, batch_id: str) -> dict:
    return {
        "municipality": municipality.name,
        "population": municipality.population,
        "province": municipality.province,
        "coordinates": {"lat": municipality.lat, "lng": municipality.lng},
        "status": "pending",
        "priority": municipality.population // 10000,
        "batch_id": batch_id,
    }


async def _trigger_worker(
    http: httpx.AsyncClient, url: str, api_key: str, batch_id: str, index: int,
) -> bool:
    try:
        response = await http.post(
            url,
            json={"batch_id": batch_id},
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=WORKER_TIMEOUT,
        )
        response.raise_for_status()
        return True
    except httpx.HTTPError as e:
        logger.error(f"[discovery] Worker {index} trigger failed: {sanitize_error(str(e))}")
        return False


async def run_discovery(
    db: Client,
    http: httpx.AsyncClient,
    settings: Settings,
    min_population: int = 100_000,
    max_municipalities: int | None = None,
    municipalities: list[str] | None = None,
    trigger_workers: bool = True,
    batch_id: str | None = None,
) -> DiscoveryRunResult:
    """
    Разбить прогон на задачи по муниципалитетам и запустить до
    discovery_max_workers воркеров параллельно. Ошибки отдельных
    воркеров логируются и считаются, но не прерывают прогон.
    """
    batch_id = batch_id or str(uuid.uuid4())
    targets = select_municipalities(min_population, max_municipalities, municipalities)
    result = DiscoveryRunResult(batch_id=batch_id)
    if not targets:
        logger.info(f"[discovery] Batch {batch_id}: no municipalities match the criteria")
        return result

    active = await _active_targets(db)
    new_targets = [m for m in targets if m.name.lower() not in active]
    result.skipped = len(targets) - len(new_targets)
    if not new_targets:
        logger.info(f"[discovery] Batch {batch_id}: all {len(targets)} targets already have active jobs")
        return result

    inserted = await run_in_thread(
        db.table(DISCOVERY_JOBS_TABLE)
        .insert([_job_row(m, batch_id) for m in new_targets])
        .execute
    )
    result.jobs_created = len(inserted.data)
    result.municipalities = [m.name for m in new_targets]
    logger.info(f"[discovery] Batch {batch_id}: created {result.jobs_created} jobs, skipped {result.skipped}")

    if not trigger_workers or result.jobs_created == 0:
        return result
    if not settings.discovery_worker_url:
        logger.warning("[discovery] DISCOVERY_WORKER_URL not set, jobs left for polling workers")
        return result

    num_workers = min(settings.discovery_max_workers, result.jobs_created)
    api_key = settings.pipeline_api_key.get_secret_value()
    outcomes = await asyncio.gather(*(
        _trigger_worker(http, settings.discovery_worker_url, api_key, batch_id, i)
        for i in range(num_workers)
    ))
    result.workers_triggered = sum(1 for ok in outcomes if ok)
    result.workers_failed = num_workers - result.workers_triggered
    logger.info(
        f"[discovery] Batch {batch_id}: triggered {result.workers_triggered}/{num_workers} workers"
    )
    return result
