import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before anything imports erpcore settings
_test_tmp_dir = tempfile.mkdtemp(prefix="erpcore_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ["TEST_MODE"] = "true"
os.environ["USE_MEMORY_STORE"] = "true"
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap argon2 parameters keep the suite fast
os.environ["PASSWORD_HASH_COST"] = "1"
os.environ["PASSWORD_HASH_MEMORY_KIB"] = "1024"
# Sessions and rate limits stay in process memory
os.environ["REDIS_URL"] = ""
os.environ.setdefault("APP_ENV", "test")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from erpcore.app import create_app  # noqa: E402
from erpcore.service.runtime import reset_runtime_for_tests  # noqa: E402

STRONG_PASSWORD = "Abc12345!"


@pytest.fixture(autouse=True)
def runtime():
    """Fresh runtime (empty store, sessions and rate-limit windows) per test."""
    rt = reset_runtime_for_tests()
    yield rt
    reset_runtime_for_tests()


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime))


@pytest.fixture
def register_user(client):
    """Register a subject over HTTP and return the response data."""

    def _register(email="user@example.com", password=STRONG_PASSWORD, **extra):
        body = {"email": email, "password": password, "firstName": "Test", "lastName": "User"}
        body.update(extra)
        response = client.post("/v1/auth/register", json=body)
        assert response.status_code == 201, response.text
        return response.json()["data"]

    return _register


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
