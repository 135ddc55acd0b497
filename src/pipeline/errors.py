"""Исключения пайплайна — таксономия отказов."""
from src.models.queue_item import FailureLevel


class PipelineError(Exception):
    """Общая ошибка обработки элемента очереди."""

    failure_level: FailureLevel = FailureLevel.TRANSIENT
    default_code = "pipeline_error"

    def __init__(self, message: str, error_code: str | None = None) -> None:
        self.error_code = error_code or self.default_code
        super().__init__(message)


class TransientError(PipelineError):
    """Таймаут, rate limit, кратковременный 5xx — ретраим с backoff."""

    failure_level = FailureLevel.TRANSIENT
    default_code = "transient"


class SourceDriftError(PipelineError):
    """Источник доступен, но экстракция пустая — вёрстка поменялась."""

    failure_level = FailureLevel.SOURCE_DRIFT
    default_code = "source_drift"


class RepairFailedError(PipelineError):
    """Лечение селекторов не прошло валидацию — нужна ручная проверка."""

    failure_level = FailureLevel.REPAIR_FAILURE
    default_code = "repair_failed"


class SystemicError(PipelineError):
    """Устойчивый 4xx/5xx или anti-bot блок на всех стратегиях."""

    failure_level = FailureLevel.SYSTEMIC
    default_code = "systemic"


class CircuitOpenError(PipelineError):
    """Circuit источника открыт — обращение к источнику запрещено."""

    failure_level = FailureLevel.TRANSIENT
    default_code = "circuit_open"
