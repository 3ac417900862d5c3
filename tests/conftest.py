import pytest
from fakes import make_settings

from research_relay.agents import clear_agent_cache
from research_relay.config import Settings
from research_relay.logging import clear_context_fields


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture(autouse=True)
def _isolate_globals():
    yield
    clear_agent_cache()
    clear_context_fields()
