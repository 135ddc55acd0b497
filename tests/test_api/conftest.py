"""Общие фикстуры и хелперы для тестов API."""
import httpx
import pytest

from tests.conftest import make_context


def make_http(handler=None) -> httpx.AsyncClient:
    """httpx-клиент для discovery-воркеров без реальной сети."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler or (lambda r: httpx.Response(200))))


def make_app(db, http=None, **ctx_overrides):
    """Создать FastAPI app поверх FakeSupabase."""
    from src.api.app import create_app

    return create_app(make_context(db, **ctx_overrides), http or make_http())


@pytest.fixture(autouse=True)
def clear_rate_limit():
    """Rate limiter хранит окна на уровне модуля — сбрасываем между тестами."""
    from src.api.app import _rate_limit_store

    _rate_limit_store.clear()
    yield
    _rate_limit_store.clear()


# Общий заголовок авторизации
AUTH_HEADERS = {"Authorization": "Bearer sk-test-key"}
