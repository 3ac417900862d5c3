"""Research Relay - asynchronous multi-step research reports from a single query"""

__version__ = "0.1.0"

from research_relay.agents import (
    clear_agent_cache,
    create_planner_agent,
    create_writer_agent,
    get_planner_agent,
    get_writer_agent,
)
from research_relay.exceptions import (
    ConsolidationError,
    PlanningError,
    PlanParseError,
    ResearchPipelineError,
    StepFailedError,
    UpstreamStatusError,
)
from research_relay.models import (
    FAILED_CONTENT,
    ConsolidatedResult,
    GeneratedSection,
    JobStatus,
    QueryType,
    ResearchJob,
    ResearchTask,
    SearchResponse,
    SubQuery,
)
from research_relay.sanitize import sanitize
from research_relay.server import get_app
from research_relay.steps import LocalStepExecutor, StepExecutor, StepPolicy
from research_relay.store import MemoryResultStore, RedisResultStore, ResultStore
from research_relay.workflow import run_research_workflow

__all__ = [
    # Models
    "SubQuery",
    "QueryType",
    "SearchResponse",
    "GeneratedSection",
    "ConsolidatedResult",
    "ResearchTask",
    "ResearchJob",
    "JobStatus",
    "FAILED_CONTENT",
    # Agents
    "create_planner_agent",
    "create_writer_agent",
    "get_planner_agent",
    "get_writer_agent",
    "clear_agent_cache",
    # Exceptions
    "ResearchPipelineError",
    "UpstreamStatusError",
    "StepFailedError",
    "PlanParseError",
    "PlanningError",
    "ConsolidationError",
    # Steps & storage
    "StepExecutor",
    "StepPolicy",
    "LocalStepExecutor",
    "ResultStore",
    "MemoryResultStore",
    "RedisResultStore",
    # Workflow
    "run_research_workflow",
    "sanitize",
    # Server
    "get_app",
]
