"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- Test settings (provider keys set, no jitter)
- In-memory run store and table gateway
- Recording sleep (no real waiting)
- Scripted fake executors
- httpx.MockTransport that records outbound requests
"""

import asyncio
import json
import os
from typing import Any, Dict, List

import httpx
import pytest

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from app.config import Settings  # noqa: E402
from core.exceptions import ExecutorError  # noqa: E402
from tasks.base_task import BaseStepExecutor, StepContext  # noqa: E402
from tasks.implementations.storage_task import InMemoryTableGateway  # noqa: E402
from tasks.registry import build_default_registry  # noqa: E402
from workflow.engine import WorkflowEngine  # noqa: E402
from workflow.models import WorkflowDefinition  # noqa: E402
from workflow.persistence import InMemoryRunStore  # noqa: E402
from workflow.retry_strategies import RetryStrategy  # noqa: E402


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class ScriptedExecutor(BaseStepExecutor):
    """Executor that replays a script of outputs and errors.

    Each call consumes the next item; an Exception instance is raised, any
    other value is returned. Once the script is exhausted the last item
    repeats.
    """

    display_name = "Scripted"
    description = "Test double"

    def __init__(self, step_type: str, *script: Any):
        self.step_type = step_type
        self.script = list(script) or [{"ok": True}]
        self.calls: List[Dict[str, Any]] = []

    async def execute(self, config: Dict[str, Any], context: StepContext) -> Any:
        self.calls.append({"config": config, "context": context})
        item = self.script[min(len(self.calls), len(self.script)) - 1]
        if isinstance(item, Exception):
            raise item
        return item


class GatedExecutor(BaseStepExecutor):
    """Executor that blocks until released, so tests can act mid-step."""

    step_type = "gated"
    display_name = "Gated"
    description = "Test double"

    def __init__(self, output: Any = None):
        self.output = output if output is not None else {"released": True}
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(self, config: Dict[str, Any], context: StepContext) -> Any:
        self.started.set()
        await self.release.wait()
        return self.output


def make_definition(steps: List[Dict[str, Any]], workflow_id: str = "wf-test", **extra: Any) -> WorkflowDefinition:
    return WorkflowDefinition.from_dict({
        "id": workflow_id,
        "name": extra.pop("name", "Test workflow"),
        "steps": steps,
        **extra,
    })


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> Settings:
    return Settings(
        ENVIRONMENT="testing",
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        RESEND_API_KEY="re_test_key",
        ANTHROPIC_API_KEY="sk-ant-test",
        RETRY_JITTER=0.0,
        ALLOW_PRIVATE_NETWORK_TARGETS=False,
    )


@pytest.fixture
def store() -> InMemoryRunStore:
    return InMemoryRunStore()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def tables() -> InMemoryTableGateway:
    return InMemoryTableGateway()


@pytest.fixture
def http_requests() -> List[httpx.Request]:
    return []


@pytest.fixture
def transport(http_requests) -> httpx.MockTransport:
    """Answers every request with 200 and a small JSON body."""

    def handler(request: httpx.Request) -> httpx.Response:
        http_requests.append(request)
        return httpx.Response(200, json={"id": f"msg_{len(http_requests)}"})

    return httpx.MockTransport(handler)


@pytest.fixture
def registry(settings, tables, transport, sleep):
    return build_default_registry(settings, tables=tables, transport=transport, sleep=sleep)


@pytest.fixture
def engine(store, registry, settings, sleep) -> WorkflowEngine:
    return WorkflowEngine(
        store,
        registry,
        retry_strategy=RetryStrategy.from_settings(settings),
        settings=settings,
        sleep=sleep,
    )


def json_body(request: httpx.Request) -> Any:
    return json.loads(request.content.decode())


def flaky(step_type: str, failures: int, output: Any = None) -> ScriptedExecutor:
    """Executor failing ``failures`` times before succeeding."""
    errors = [ExecutorError(f"boom {i + 1}") for i in range(failures)]
    return ScriptedExecutor(step_type, *errors, output if output is not None else {"ok": True})
