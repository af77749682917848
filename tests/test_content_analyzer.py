from __future__ import annotations

import asyncio
import json

import pytest

from awardprobe.llm_client import Completion, Usage
from awardprobe.models.research import Analysis, Finding
from awardprobe.research_core.analysis.analyzer import (
    NO_TRANSACTION_DATA,
    NO_TRANSACTIONS,
    TRANSACTION_ANALYSIS_FAILED,
    ContentAnalyzer,
    build_enriched_context,
    extract_json_object,
    format_transactions,
    harvest_indicators,
)
from awardprobe.research_core.analysis.outcome import FailureReason
from awardprobe.services.retry import RetryPolicy

AWARD_METADATA = {
    "details": {
        "total_obligation": 1500000.0,
        "date_signed": "2023-09-29",
        "type_description": "DEFINITIVE CONTRACT",
        "description": "IT support services",
        "recipient": {
            "recipient_name": "Acme Federal LLC",
            "parent_recipient_name": "Acme Holdings",
            "business_categories": ["Small Business", "Limited Liability Corporation"],
            "location": {"city_name": "Reston", "state_code": "VA"},
        },
        "place_of_performance": {"city_name": "Arlington", "state_code": "VA"},
    },
    "transactions": [
        {"action_date": "2023-09-29", "federal_action_obligation": 1000000, "description": "Initial award"},
        {"action_date": "2023-09-30", "federal_action_obligation": -250000.5, "description": "Deobligation"},
    ],
}

RISK_JSON = {
    "initialThoughts": "Year-end timing looks unusual",
    "followUpQuestions": ["Acme Federal LLC subcontractors", "  "],
    "indicators": ["Quote: 'signed 2023-09-29' - end of fiscal year"],
    "riskLevel": 3,
    "justification": "Timing and reversal",
}

TRANSACTION_TEXT = "Findings:\n- Year-end spike\n2. Reversal of $250,000.50\nNo other concerns"


async def _no_sleep(_delay: float) -> None:
    return None


def _retry(max_retries: int = 0) -> RetryPolicy:
    return RetryPolicy(max_retries=max_retries, base_delay=0.0, max_delay=0.0, sleep=_no_sleep)


class FakeLLM:
    """Answers by call type: JSON mode for risk, free text otherwise."""

    def __init__(self, *, risk=None, transactions=TRANSACTION_TEXT, summary="Summary line", fail=False):
        self.risk = json.dumps(RISK_JSON) if risk is None else risk
        self.transactions = transactions
        self.summary = summary
        self.fail = fail
        self.calls: list[dict] = []

    async def complete(self, *, model, messages, temperature=0, json_mode=False, max_tokens=None):
        self.calls.append({"messages": messages, "json_mode": json_mode, "temperature": temperature})
        if self.fail:
            raise RuntimeError("provider down")
        user = messages[-1]["content"]
        if json_mode:
            text = self.risk
        elif "transaction history" in user:
            text = self.transactions
        else:
            text = self.summary
        return Completion(text=text, usage=Usage(input_tokens=10, output_tokens=5))

    def count(self, *, json_mode: bool) -> int:
        return sum(1 for c in self.calls if c["json_mode"] is json_mode)


def _analyzer(llm: FakeLLM, **kwargs) -> ContentAnalyzer:
    kwargs.setdefault("retry", _retry())
    return ContentAnalyzer(model="test-model", llm=llm, timeout_seconds=5, **kwargs)


def test_harvest_indicators_strips_markers():
    text = "Intro\n- dash item\n• bullet item\n* star item\n3. numbered item\n10) other\n-\nplain"
    assert harvest_indicators(text) == [
        "dash item",
        "bullet item",
        "star item",
        "numbered item",
        "other",
    ]


def test_harvest_indicators_keeps_leading_numbers_without_marker():
    text = "2023 was a busy year\n42 open audits\n7. seventh item"
    assert harvest_indicators(text) == [
        "2023 was a busy year",
        "42 open audits",
        "seventh item",
    ]


def test_extract_json_object_handles_fenced_output():
    assert extract_json_object('```json\n{"riskLevel": 2}\n```') == {"riskLevel": 2}
    assert extract_json_object('Sure: {"a": 1} done') == {"a": 1}
    with pytest.raises(json.JSONDecodeError):
        extract_json_object("no object here")


def test_format_transactions():
    assert format_transactions([]) == NO_TRANSACTIONS
    assert format_transactions(AWARD_METADATA["transactions"]) == (
        "- 2023-09-29: $1000000 - Initial award\n- 2023-09-30: $-250000.5 - Deobligation"
    )


def test_build_enriched_context_renders_sections():
    context = build_enriched_context(AWARD_METADATA)

    assert context.startswith("AWARD OVERVIEW:")
    assert "- Award Amount: $1500000" in context
    assert "- Name: Acme Federal LLC" in context
    assert "- Parent Company: Acme Holdings" in context
    assert "- Business Categories: Small Business, Limited Liability Corporation" in context
    assert "- Location: Reston, VA" in context
    assert "PERFORMANCE LOCATION:\nArlington, VA" in context
    assert "TRANSACTION HISTORY:\n- 2023-09-29: $1000000 - Initial award" in context


def test_build_enriched_context_without_metadata():
    context = build_enriched_context(None)
    assert "- Name: Unknown" in context
    assert context.endswith(NO_TRANSACTIONS)


@pytest.mark.asyncio
async def test_analyze_empty_context_makes_no_calls():
    llm = FakeLLM()
    outcome = await _analyzer(llm).analyze("prompt", "   ")

    assert outcome.failure is FailureReason.EMPTY_CONTEXT
    assert outcome.unwrap_or("") == ""
    assert llm.calls == []


@pytest.mark.asyncio
async def test_analyze_free_text_joins_every_window():
    llm = FakeLLM(summary="part")
    analyzer = _analyzer(llm, window_size=10, window_overlap=2)

    outcome = await analyzer.analyze("prompt", "x" * 25)

    assert outcome.ok
    assert len(llm.calls) == 3
    assert outcome.value == "part\npart\npart"
    assert llm.calls[0]["temperature"] == 0
    assert llm.calls[0]["messages"][0]["content"].startswith("prompt\n\nAnalyze this part of the content:\n")


@pytest.mark.asyncio
async def test_analyze_structured_parses_first_window_only():
    responses = iter([json.dumps({**RISK_JSON, "riskLevel": 4}), json.dumps({**RISK_JSON, "riskLevel": 5})])

    class OrderedLLM(FakeLLM):
        async def complete(self, **kwargs):
            await super().complete(**kwargs)
            return Completion(text=next(responses), usage=Usage())

    llm = OrderedLLM()
    analyzer = _analyzer(llm, window_size=10, window_overlap=0)

    outcome = await analyzer.analyze("prompt", "y" * 15, Analysis)

    assert outcome.ok
    assert outcome.value.risk_level == 4
    assert len(llm.calls) == 2
    assert llm.calls[0]["messages"][0] == {
        "role": "system",
        "content": "You must respond with a valid JSON object.",
    }


@pytest.mark.asyncio
async def test_analyze_accepts_questions_alias_and_fenced_json():
    llm = FakeLLM(risk='```json\n{"questions": ["q1"], "riskLevel": 2}\n```')

    outcome = await _analyzer(llm).analyze("prompt", "context", Analysis)

    assert outcome.ok
    assert outcome.value.follow_up_questions == ["q1"]
    assert outcome.value.risk_level == 2


@pytest.mark.asyncio
async def test_analyze_invalid_json():
    outcome = await _analyzer(FakeLLM(risk="not json")).analyze("prompt", "context", Analysis)
    assert outcome.failure is FailureReason.INVALID_JSON


@pytest.mark.asyncio
@pytest.mark.parametrize("risk_level", [7, 0, 2.5])
async def test_analyze_schema_mismatch_for_bad_risk_level(risk_level):
    llm = FakeLLM(risk=json.dumps({**RISK_JSON, "riskLevel": risk_level}))

    outcome = await _analyzer(llm).analyze("prompt", "context", Analysis)

    assert outcome.failure is FailureReason.SCHEMA_MISMATCH


@pytest.mark.asyncio
async def test_analyze_provider_error_after_retries():
    llm = FakeLLM(fail=True)

    outcome = await _analyzer(llm, retry=_retry(max_retries=2)).analyze("prompt", "context")

    assert outcome.failure is FailureReason.PROVIDER_ERROR
    assert len(llm.calls) == 3


@pytest.mark.asyncio
async def test_analyze_times_out_hung_call():
    class HangingLLM(FakeLLM):
        async def complete(self, **kwargs):
            await asyncio.sleep(10)

    analyzer = ContentAnalyzer(model="m", llm=HangingLLM(), retry=_retry(), timeout_seconds=0.01)

    outcome = await analyzer.analyze("prompt", "context")

    assert outcome.failure is FailureReason.TIMEOUT


@pytest.mark.asyncio
async def test_score_content_merges_transaction_analysis():
    llm = FakeLLM()

    analysis = await _analyzer(llm).score_content("Acme contract news", "AWD-1", AWARD_METADATA)

    assert analysis.risk_level == 3
    assert analysis.indicators == [
        "Quote: 'signed 2023-09-29' - end of fiscal year",
        "Year-end spike",
        "Reversal of $250,000.50",
    ]
    assert analysis.justification == f"Timing and reversal\n\nTransaction Analysis:\n{TRANSACTION_TEXT}"
    assert analysis.follow_up_questions == ["Acme Federal LLC subcontractors"]
    risk_prompt = [c for c in llm.calls if c["json_mode"]][0]["messages"][1]["content"]
    assert "Related Content:\nAcme contract news" in risk_prompt
    assert "award AWD-1" in risk_prompt


@pytest.mark.asyncio
async def test_score_content_without_transactions_skips_transaction_call():
    llm = FakeLLM()

    analysis = await _analyzer(llm).score_content("contract text", "AWD-1", {"details": {}})

    assert llm.count(json_mode=False) == 0
    assert analysis.justification.endswith(f"Transaction Analysis:\n{NO_TRANSACTION_DATA}")


@pytest.mark.asyncio
async def test_transaction_analysis_is_memoized():
    llm = FakeLLM()
    analyzer = _analyzer(llm)

    await analyzer.score_content("page one contract", "AWD-1", AWARD_METADATA)
    await analyzer.score_content("page two contract", "AWD-1", AWARD_METADATA)

    assert llm.count(json_mode=False) == 1
    assert llm.count(json_mode=True) == 2


@pytest.mark.asyncio
async def test_transaction_analysis_failure_text():
    llm = FakeLLM(transactions="")

    text = await _analyzer(llm).analyze_transactions("AWD-1", AWARD_METADATA["transactions"])

    assert text == TRANSACTION_ANALYSIS_FAILED


@pytest.mark.asyncio
async def test_score_content_falls_back_to_default_on_failure():
    llm = FakeLLM(fail=True)

    analysis = await _analyzer(llm).score_content("contract text", "AWD-1", AWARD_METADATA)

    assert analysis.risk_level == 1
    assert analysis.initial_thoughts == "Analysis failed"
    assert analysis.indicators == []
    assert analysis.follow_up_questions == []
    assert "provider_error" in analysis.justification


@pytest.mark.asyncio
async def test_summarize_skips_model_without_findings():
    llm = FakeLLM()
    assert await _analyzer(llm).summarize([]) == ""
    assert llm.calls == []


@pytest.mark.asyncio
async def test_summarize_sends_serialized_findings():
    llm = FakeLLM(summary="Risky vendor\nNeeds audit")
    finding = Finding(
        content="contract page",
        source="https://a.example",
        relevance_score=0.4,
        analysis=Analysis(risk_level=3, justification="j"),
    )

    summary = await _analyzer(llm).summarize([finding])

    assert summary == "Risky vendor\nNeeds audit"
    assert '"riskLevel": 3' in llm.calls[0]["messages"][0]["content"]


@pytest.mark.asyncio
async def test_summarize_failure_returns_empty_string():
    llm = FakeLLM(fail=True)
    finding = Finding(
        content="c",
        source="s",
        relevance_score=0.1,
        analysis=Analysis(risk_level=2),
    )
    assert await _analyzer(llm).summarize([finding]) == ""
