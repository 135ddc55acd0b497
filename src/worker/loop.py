"""Основной цикл воркера — polling стадий очереди + обработка элементов."""
import asyncio

from loguru import logger

from src.models.queue_item import CLAIMABLE_STAGES, QueueItem, Stage
from src.pipeline.context import PipelineContext
from src.worker.handlers import process_item


def worker_stages(ctx: PipelineContext) -> list[Stage]:
    """Стадии, которые забирает этот воркер (WORKER_STAGES, по умолчанию все)."""
    configured = ctx.settings.worker_stages_list
    if not configured:
        return list(CLAIMABLE_STAGES)
    stages = [s for s in CLAIMABLE_STAGES if s.value in configured]
    unknown = set(configured) - {s.value for s in stages}
    if unknown:
        logger.warning(f"[worker] Ignoring unknown WORKER_STAGES: {', '.join(sorted(unknown))}")
    return stages


async def process_claimed(
    ctx: PipelineContext,
    item: QueueItem,
    semaphore: asyncio.Semaphore,
) -> None:
    """Обработать один элемент с учётом семафора."""
    async with semaphore:
        logger.debug(f"Processing item {item.id}: stage={item.stage}, failures={item.failure_count}")
        try:
            final = await process_item(ctx, item)
            logger.debug(f"Item {item.id} stopped at {final}")
        except Exception as e:
            logger.exception(f"Unhandled error in item {item.id}: {e}")


async def run_worker(ctx: PipelineContext, shutdown_event: asyncio.Event) -> None:
    """
    Основной polling-цикл воркера.
    Claim'ит элементы по стадиям (поздние стадии первыми — они ближе к каталогу),
    запускает обработку через asyncio.create_task.
    Останавливается по shutdown_event, дожидаясь завершения активных задач.
    """
    settings = ctx.settings
    stages = list(reversed(worker_stages(ctx)))
    semaphore = asyncio.Semaphore(settings.worker_max_concurrent)
    active_tasks: set[asyncio.Task[None]] = set()
    # Элементы в обработке не берём повторно при следующем poll
    processing_ids: set[str] = set()

    logger.info(
        f"Worker {settings.worker_id} started (poll={settings.worker_poll_interval}s, "
        f"concurrent={settings.worker_max_concurrent}, stages={len(stages)})"
    )

    def _on_task_done(item_id: str, t: asyncio.Task[None]) -> None:
        active_tasks.discard(t)
        processing_ids.discard(item_id)

    while not shutdown_event.is_set():
        try:
            for stage in stages:
                # Не claim'им больше, чем можем обработать: чужой claim держит элемент до таймаута
                capacity = settings.worker_max_concurrent - len(active_tasks)
                if capacity <= 0:
                    break
                items = await ctx.coordinator.claim(
                    stage, min(capacity, settings.stage_batch_size), settings.worker_id
                )
                if items:
                    logger.info(f"Claimed {len(items)} items at {stage}")

                for item in items:
                    if item.id in processing_ids:
                        continue
                    processing_ids.add(item.id)

                    t = asyncio.create_task(process_claimed(ctx, item, semaphore))
                    active_tasks.add(t)
                    t.add_done_callback(lambda done_t, iid=item.id: _on_task_done(iid, done_t))

        except Exception as e:
            logger.exception(f"Error in worker loop: {e}")

        # Ждём poll_interval или shutdown
        try:
            await asyncio.wait_for(
                shutdown_event.wait(),
                timeout=settings.worker_poll_interval,
            )
        except TimeoutError:
            pass

    # Graceful shutdown: дождаться завершения активных задач
    if active_tasks:
        logger.info(f"Waiting for {len(active_tasks)} active items to finish...")
        done, pending = await asyncio.wait(active_tasks, timeout=30)
        if pending:
            logger.warning(f"Cancelling {len(pending)} items that didn't finish in 30s")
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    logger.info("Worker shutting down")
