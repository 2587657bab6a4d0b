import importlib
import pytest
from unittest.mock import patch


@pytest.mark.parametrize("session_backend", ["memory", "redis"])
@pytest.mark.parametrize("mode", ["guided", "assistant"])
def test_import_graph_smoke(session_backend, mode):
    """
    Verify that the app can be imported without crashing,
    regardless of backend and interaction mode.
    """
    with patch.dict("os.environ", {
        "SESSION_BACKEND": session_backend,
        "INTERACTION_MODE": mode,
        "REDIS_URL": "redis://localhost:6379/0",  # harmless default
    }):
        try:
            for name in ("loanflow.main", "loanflow.core.orchestrator", "loanflow.api.routes"):
                importlib.import_module(name)
        except ImportError as e:
            pytest.fail(f"Import failed with backend={session_backend} mode={mode}: {e}")


def test_uvicorn_importable():
    """
    Simulate uvicorn import string loading.
    """
    from loanflow.main import app
    assert app is not None


def test_build_orchestrator_uses_memory_backends():
    from loanflow.core.orchestrator import build_orchestrator
    from loanflow.settings import settings
    from loanflow.store.session_repo import InMemorySessionStore
    from loanflow.utils.lock import SessionLocks

    with patch.object(settings, "SESSION_BACKEND", "memory"), \
            patch.object(settings, "RATE_LIMIT_BACKEND", "memory"), \
            patch.object(settings, "LLM_BASE_URL", ""):
        orch = build_orchestrator(provider=object())

    assert isinstance(orch.store, InMemorySessionStore)
    assert type(orch.locks) is SessionLocks
    assert orch.resolver is None
    assert orch.router.provider is not None


@patch("loanflow.store.redis_conn.get_redis")
def test_build_orchestrator_shares_one_redis(mock_get_redis):
    from loanflow.core.orchestrator import build_orchestrator
    from loanflow.settings import settings
    from loanflow.store.session_repo import RedisSessionStore

    with patch.object(settings, "SESSION_BACKEND", "redis"), \
            patch.object(settings, "RATE_LIMIT_BACKEND", "redis"), \
            patch.object(settings, "LLM_BASE_URL", ""):
        orch = build_orchestrator(provider=object())

    mock_get_redis.assert_called_once()
    assert isinstance(orch.store, RedisSessionStore)
