import pytest

from deep_research.schemas import PlanStep, RawFindings, Source, StepResult, StructuredFindings
from deep_research.synthesizer import extract_knowledge, stream_synthesize_report, synthesize_report
from tests.fakes import DEFAULT_REPORT, FakeReasoningClient


def _done(step_id: str, findings, confidence=0.8, sources=()) -> PlanStep:
    step = PlanStep(id=step_id, title=f"Title {step_id}", description=f"Description {step_id}")
    step.transition("executing")
    step.result = StepResult(data=findings, sources=list(sources), confidence=confidence, execution_time_ms=3)
    step.transition("completed")
    return step


def _steps():
    failed = PlanStep(id="3", title="Broken", status="failed")
    return [
        _done(
            "1",
            StructuredFindings(data={"capital": "Paris"}, summary="Paris is the capital."),
            confidence=0.9,
            sources=[Source(title="Wiki", url="https://example.org/france"), Source(title="Atlas")],
        ),
        _done("2", StructuredFindings(data={"population": 68}), confidence=0.6),
        failed,
        _done("4", RawFindings(raw_response="Unstructured notes"), confidence=0.5),
    ]


def test_extract_knowledge_formats_each_completed_step():
    entries = extract_knowledge(_steps(), session_id="session_x")
    assert [e.id for e in entries] == ["knowledge_1", "knowledge_2", "knowledge_4"]
    assert all(e.session_id == "session_x" for e in entries)
    assert [e.relevance for e in entries] == [0.9, 0.6, 0.5]
    first = entries[0].content
    assert first.startswith("**Title 1**\nDescription 1")
    assert "Paris is the capital." in first
    assert "Sources:\n1. Wiki - https://example.org/france\n2. Atlas - no url" in first
    assert 'Findings: {\n  "population": 68\n}' in entries[1].content
    assert entries[2].content.endswith("Unstructured notes")


def test_extract_knowledge_is_idempotent():
    steps = _steps()
    assert extract_knowledge(steps) == extract_knowledge(steps)
    entry = extract_knowledge(steps)[0]
    assert entry.timestamp == steps[0].result.completed_at


def test_extract_knowledge_skips_everything_without_results():
    assert extract_knowledge([PlanStep(id="1", title="Pending")]) == []


@pytest.mark.asyncio
async def test_synthesize_report_uses_synthesizer_role():
    fake = FakeReasoningClient()
    steps = _steps()
    report = await synthesize_report("capital of France?", steps, extract_knowledge(steps), fake)
    assert report == DEFAULT_REPORT
    assert fake.roles_called() == ["synthesizer"]
    assert "capital of France?" in fake.calls[0]["user"]
    assert "Knowledge Base" in fake.calls[0]["user"]


@pytest.mark.asyncio
async def test_stream_synthesize_report_yields_the_whole_report():
    fake = FakeReasoningClient(chunk_size=5)
    chunks = [chunk async for chunk in stream_synthesize_report("q", _steps(), [], fake)]
    assert len(chunks) > 1
    assert "".join(chunks) == DEFAULT_REPORT
