"""Loguru sink для записи WARNING+ логов пайплайна в Supabase."""

from supabase import Client

from src.database import sanitize_error

LOGS_TABLE = "pipeline_logs"


def create_supabase_sink(db: Client, worker_id: str | None = None):
    """Фабрика: вернуть sink-функцию, привязанную к db-клиенту."""

    def sink(message) -> None:
        record = message.record
        extra = record["extra"]
        try:
            db.table(LOGS_TABLE).insert({
                "level": record["level"].name,
                "module": record["name"],
                "message": sanitize_error(str(record["message"])),
                "worker_id": worker_id,
                "source_id": extra.get("source_id"),
                "queue_item_id": extra.get("item_id"),
            }).execute()
        except Exception:
            pass  # Ошибка логирования не должна ронять пайплайн

    return sink
