"""Run one research workflow in process and save the consolidated result."""

import asyncio
import sys
from datetime import datetime
from pathlib import Path

import httpx
from dotenv import load_dotenv

from research_relay.config import get_settings
from research_relay.logging import configure_structlog, get_logger
from research_relay.models import ConsolidatedResult, ResearchTask, new_research_id
from research_relay.steps import LocalStepExecutor
from research_relay.store import MemoryResultStore
from research_relay.workflow import run_research_workflow

log = get_logger("research_relay.cli")

OUTPUTS_DIR = Path("outputs")


async def run_once(query: str) -> ConsolidatedResult:
    task = ResearchTask(research_id=new_research_id(), query=query)
    async with httpx.AsyncClient() as http_client:
        executor = LocalStepExecutor(task.research_id, http_client=http_client)
        return await run_research_workflow(task, executor=executor, store=MemoryResultStore(), settings=get_settings())


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if not args or not args[0].strip():
        print("Usage: python -m research_relay 'your research topic'")
        return 1

    load_dotenv()
    configure_structlog(testing=True)
    query = args[0].strip()

    try:
        result = asyncio.run(run_once(query))
    except Exception as e:
        log.exception("cli.failed", error=str(e))
        print(f"Research workflow failed: {e}", file=sys.stderr)
        return 1

    OUTPUTS_DIR.mkdir(exist_ok=True)
    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    output_file = OUTPUTS_DIR / f"research_{timestamp}.json"
    output_file.write_text(result.model_dump_json(by_alias=True, indent=2))
    log.info("cli.output.saved", path=str(output_file), sections=len(result.blogs))

    failed = sum(1 for section in result.blogs if section.failed)
    print(f"Saved {len(result.blogs)} sections ({failed} failed) to {output_file}")
    return 0
