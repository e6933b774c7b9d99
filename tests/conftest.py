import random
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from src.brainstorm.infrastructure import store as store_module  # noqa: E402
from src.brainstorm.infrastructure.events import EventBus  # noqa: E402
from src.brainstorm.infrastructure.store import InMemoryBrainstormStore  # noqa: E402
from src.brainstorm.services import completion as completion_module  # noqa: E402
from src.brainstorm.services import session_service as session_module  # noqa: E402
from src.brainstorm.services import tasks as tasks_module  # noqa: E402
from src.brainstorm.services.engagement import EngagementConfig  # noqa: E402
from src.brainstorm.services.session_service import SessionService  # noqa: E402
from src.brainstorm.services.tasks import TaskRunner  # noqa: E402

from tests.utils import FakeClock, FakeCompletionService  # noqa: E402


@pytest.fixture(autouse=True)
def _isolate_singletons(monkeypatch):
    """Every test starts without cached stores/services and without provider keys."""
    for key in ("OPENAI_API_KEY", "GEMINI_API_KEY", "XAI_API_KEY", "BRAINSTORM_MODEL_PROVIDER", "REDIS_URL"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    store_module.reset_store(None)
    session_module.reset_session_service(None)
    tasks_module.reset_task_runner(None)
    completion_module.reset_completion_service(None)
    yield
    store_module.reset_store(None)
    session_module.reset_session_service(None)
    tasks_module.reset_task_runner(None)
    completion_module.reset_completion_service(None)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def store(bus) -> InMemoryBrainstormStore:
    return InMemoryBrainstormStore(bus=bus)


@pytest.fixture
def completion() -> FakeCompletionService:
    return FakeCompletionService()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def runner() -> TaskRunner:
    return TaskRunner()


@pytest.fixture
def engagement_config() -> EngagementConfig:
    return EngagementConfig(tick_seconds=30, kickoff_after=60, inactivity_after=120, enabled=True)


@pytest.fixture
def service(store, completion, bus, runner, clock, engagement_config) -> SessionService:
    return SessionService(
        store=store,
        completion=completion,  # type: ignore[arg-type]
        bus=bus,
        runner=runner,
        config=engagement_config,
        clock=clock,
        rng=random.Random(7),
        image_enabled=True,
    )
