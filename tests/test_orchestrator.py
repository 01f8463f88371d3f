import asyncio
import json
import sqlite3
from pathlib import Path

import pytest

from deep_research.config import OrchestrationLimits
from deep_research.db import Database
from deep_research.llm import ReasoningServiceError
from deep_research.orchestrator import EventBus, PlanGenerationError, run_research
from tests.conftest import make_settings
from tests.fakes import DEFAULT_REPORT, FailingDatabase, FakeReasoningClient, plan_xml


QUERY = "What is the capital of France?"

INVALID_VERIFICATION = json.dumps({"is_valid": False, "issues": ["Step 1 is too vague"], "suggestions": []})


def _three_step_plan() -> str:
    return plan_xml(
        ("1", "Find population data", "web_search", ""),
        ("2", "Fetch census tables", "fetch_url", "1"),
        ("3", "Compare growth", "calculate", "1"),
    )


@pytest.mark.asyncio
async def test_capital_of_france_end_to_end(tmp_path: Path, db: Database):
    fake = FakeReasoningClient(tokens_per_call=5)
    bus = EventBus(db)
    result = await run_research(QUERY, llm=fake, db=db, settings=make_settings(tmp_path), bus=bus)

    assert result.status == "success"
    assert result.metadata.steps_completed == 1
    assert result.metadata.steps_total == 1
    assert result.metadata.planning_attempts == 1
    assert result.metadata.best_effort is False
    assert result.metadata.report_truncated is False
    assert result.metadata.policy_decision.action == "stop"
    assert result.metadata.tokens_used == 15
    assert result.final_report == DEFAULT_REPORT
    assert result.steps[0].result.data.summary == "Paris is the capital of France."
    assert [k.id for k in result.knowledge] == ["knowledge_1"]
    assert result.knowledge[0].session_id == result.session_id
    assert fake.roles_called() == ["planner", "verifier", "executor", "synthesizer"]

    session = await db.get_session(result.session_id)
    assert session["status"] == "completed"
    assert session["plan"]["status"] == "completed"
    assert session["result"]["status"] == "success"
    stored = await db.get_knowledge(result.session_id)
    assert [k.id for k in stored] == ["knowledge_1"]

    events = await db.list_events(result.session_id)
    phases = [e["payload"]["status"] for e in events if e["event_type"] == "phase"]
    assert phases == ["planning", "verifying", "executing", "deciding", "extracting", "synthesizing"]
    assert events[-1]["event_type"] == "completed"


@pytest.mark.asyncio
async def test_report_chunks_reach_live_subscribers(tmp_path: Path, db: Database):
    fake = FakeReasoningClient(chunk_size=4)
    bus = EventBus(db)
    received = []
    original_create = db.create_session

    async def create_and_subscribe(query, plan):
        session = await original_create(query, plan)
        received.append(await bus.subscribe(session["id"]))
        return session

    db.create_session = create_and_subscribe
    result = await run_research(QUERY, llm=fake, db=db, settings=make_settings(tmp_path), bus=bus)
    queue = received[0]
    chunks = []
    while not queue.empty():
        event = queue.get_nowait()
        if event["event_type"] == "report_chunk":
            chunks.append(event["payload"]["text"])
    assert "".join(chunks) == result.final_report


@pytest.mark.asyncio
async def test_unverifiable_plan_runs_best_effort(tmp_path: Path, db: Database):
    fake = FakeReasoningClient(verifications=[INVALID_VERIFICATION])
    result = await run_research(QUERY, llm=fake, db=db, settings=make_settings(tmp_path))
    assert result.metadata.planning_attempts == 3
    assert result.metadata.best_effort is True
    assert result.metadata.verification_issues == ["Step 1 is too vague"]
    assert result.metadata.policy_decision.action == "stop"
    assert result.metadata.policy_decision.confidence == 1.0
    assert result.status == "success"
    assert fake.roles_called().count("planner") == 3


@pytest.mark.asyncio
async def test_replanning_stops_at_first_verified_plan(tmp_path: Path, db: Database):
    fake = FakeReasoningClient(verifications=[INVALID_VERIFICATION, json.dumps({"is_valid": True, "issues": []})])
    result = await run_research(QUERY, llm=fake, db=db, settings=make_settings(tmp_path))
    assert result.metadata.planning_attempts == 2
    assert result.metadata.best_effort is False
    sessions = await db.list_sessions()
    assert len(sessions) == 1


@pytest.mark.asyncio
async def test_generation_error_counts_as_an_attempt(tmp_path: Path, db: Database):
    fake = FakeReasoningClient(plans=[ReasoningServiceError("HTTP 503"), plan_xml(("1", "Look up", "web_search", ""))])
    result = await run_research(QUERY, llm=fake, db=db, settings=make_settings(tmp_path))
    assert result.metadata.planning_attempts == 2
    assert result.status == "success"


@pytest.mark.asyncio
async def test_no_plan_at_all_is_fatal(tmp_path: Path, db: Database):
    fake = FakeReasoningClient(plans=[ReasoningServiceError("HTTP 503")])
    with pytest.raises(PlanGenerationError) as excinfo:
        await run_research(QUERY, llm=fake, db=db, settings=make_settings(tmp_path))
    assert "HTTP 503" in str(excinfo.value)
    assert fake.roles_called() == ["planner", "planner", "planner"]
    assert await db.list_sessions() == []


@pytest.mark.asyncio
async def test_step_failure_yields_partial_result(tmp_path: Path, db: Database):
    fake = FakeReasoningClient(
        plans=[_three_step_plan()],
        step_responses={"Fetch census tables": ReasoningServiceError("HTTP 502")},
    )
    result = await run_research(QUERY, llm=fake, db=db, settings=make_settings(tmp_path))
    assert [s.status for s in result.steps] == ["completed", "failed", "completed"]
    assert result.status == "partial"
    assert result.metadata.steps_completed == 2
    assert result.metadata.policy_decision.action == "stop"
    assert result.metadata.policy_decision.confidence == 0.8
    assert len(result.knowledge) == 2
    session = await db.get_session(result.session_id)
    assert session["plan"]["status"] == "completed"


@pytest.mark.asyncio
async def test_all_steps_failing_marks_plan_failed(tmp_path: Path, db: Database):
    fake = FakeReasoningClient(default_step_response=ReasoningServiceError("HTTP 500"))
    result = await run_research(QUERY, llm=fake, db=db, settings=make_settings(tmp_path))
    assert result.status == "partial"
    assert result.knowledge == []
    assert result.metadata.policy_decision.action == "replan"
    session = await db.get_session(result.session_id)
    assert session["plan"]["status"] == "failed"
    assert session["status"] == "completed"


@pytest.mark.asyncio
async def test_persistence_error_aborts_the_run(tmp_path: Path):
    db = FailingDatabase(str(tmp_path / "broken.db"))
    await db.init()
    with pytest.raises(sqlite3.OperationalError):
        await run_research(
            QUERY, llm=FakeReasoningClient(), db=db, settings=make_settings(tmp_path), bus=EventBus(db)
        )
    sessions = await db.list_sessions()
    assert sessions[0]["status"] == "failed"
    events = await db.list_events(sessions[0]["id"])
    assert events[-1]["event_type"] == "failed"
    assert "disk I/O error" in events[-1]["payload"]["error"]


@pytest.mark.asyncio
async def test_synthesis_cut_short_by_deadline_keeps_partial_report(tmp_path: Path, db: Database):
    fake = FakeReasoningClient(chunk_size=2, stream_delay=0.1)
    settings = make_settings(tmp_path, limits=OrchestrationLimits(total_timeout_s=30, step_timeout_s=0.5))
    result = await run_research(QUERY, llm=fake, db=db, settings=settings)
    assert result.metadata.report_truncated is True
    assert result.final_report
    assert DEFAULT_REPORT.startswith(result.final_report)
    assert len(result.final_report) < len(DEFAULT_REPORT)
    session = await db.get_session(result.session_id)
    assert session["status"] == "completed"


@pytest.mark.asyncio
async def test_synthesis_failure_marks_session_failed(tmp_path: Path, db: Database):
    fake = FakeReasoningClient(stream_error=ReasoningServiceError("stream refused"))
    bus = EventBus(db)
    with pytest.raises(ReasoningServiceError):
        await run_research(QUERY, llm=fake, db=db, settings=make_settings(tmp_path), bus=bus)
    sessions = await db.list_sessions()
    session = await db.get_session(sessions[0]["id"])
    assert session["status"] == "failed"
    assert session["result"] is None
    events = await db.list_events(session["id"])
    assert [e["payload"]["status"] for e in events if e["event_type"] == "phase"][-1] == "synthesizing"
    assert events[-1]["event_type"] == "failed"
    assert events[-1]["payload"]["error"] == "stream refused"


@pytest.mark.asyncio
async def test_failure_reaches_live_subscribers(tmp_path: Path, db: Database):
    fake = FakeReasoningClient(stream_error=ReasoningServiceError("stream refused"))
    bus = EventBus(db)
    seen = []
    original_create = db.create_session

    async def create_and_subscribe(query, plan):
        session = await original_create(query, plan)
        seen.append(await bus.subscribe(session["id"]))
        return session

    db.create_session = create_and_subscribe
    with pytest.raises(ReasoningServiceError):
        await run_research(QUERY, llm=fake, db=db, settings=make_settings(tmp_path), bus=bus)
    queue = seen[0]
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    assert events[-1]["event_type"] == "failed"
    assert events[-1]["seq"] is not None


@pytest.mark.asyncio
async def test_concurrent_sessions_are_isolated(tmp_path: Path, db: Database):
    settings = make_settings(tmp_path)
    results = await asyncio.gather(
        run_research(QUERY, llm=FakeReasoningClient(), db=db, settings=settings),
        run_research("Population of Lyon?", llm=FakeReasoningClient(), db=db, settings=settings),
    )
    assert results[0].session_id != results[1].session_id
    for result in results:
        session = await db.get_session(result.session_id)
        assert session["query"] == result.query
        assert session["status"] == "completed"
