"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Shared fixtures available to all test modules
- Test environment setup
- Fresh rate-limit tables per test
- A scripted Groq API (mock_upstream)
"""

import inspect
import os
import sys
from dataclasses import replace
from pathlib import Path

import httpx
import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Ensure test environment variables are set early enough (during test collection),
# because the app loads config at import time.
os.environ.setdefault("GROQ_API_KEY", "test-key")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_PATH", "/tmp/lumiere_test.log")
os.environ.setdefault("LOG_COLOR", "false")


@pytest.fixture(scope="session")
def project_root_path():
    """Get project root path."""
    return project_root


@pytest.fixture(autouse=True)
def fresh_rate_limits(monkeypatch):
    """Give every test empty rate-limit tables to avoid order coupling."""
    import lumiere_service
    from rate_limiter import FixedWindowRateLimiter

    for attr in ("global_limiter", "chat_limiter", "transcribe_limiter"):
        old = getattr(lumiere_service, attr)
        monkeypatch.setattr(
            lumiere_service,
            attr,
            FixedWindowRateLimiter(old.max_requests, old.window_s, name=old.name),
        )
    yield


async def _no_sleep(seconds):
    return None


@pytest.fixture
async def mock_upstream(monkeypatch):
    """Point the service at a scripted Groq API; returns an installer."""
    import lumiere_service
    from upstream import UpstreamClient

    clients = []

    def install(handler, **config_overrides):
        seen = []

        async def recording(request):
            seen.append(request)
            result = handler(request)
            if inspect.isawaitable(result):
                result = await result
            return result

        cfg = replace(lumiere_service.config, **config_overrides)
        upstream = UpstreamClient(cfg, transport=httpx.MockTransport(recording), sleep=_no_sleep)
        clients.append(upstream)
        monkeypatch.setattr(lumiere_service, "upstream_client", upstream)
        return seen

    yield install

    for upstream in clients:
        await upstream.aclose()
