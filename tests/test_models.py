from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from awardprobe.config import ResearchLimits, Settings
from awardprobe.models.award import AwardMetadata
from awardprobe.models.research import Analysis, AwardSearchContext, Finding, ReasoningStep
from awardprobe.research_core.analysis.chunking import split_into_windows


def test_context_serializes_with_camel_case_keys():
    context = AwardSearchContext(original_award_id="A1", summary="done")
    context.findings.append(
        Finding(
            content="page",
            source="https://a.example",
            relevance_score=0.5,
            analysis=Analysis(risk_level=3, follow_up_questions=["next"]),
        )
    )
    context.reasoning_chain.steps.append(ReasoningStep(stage="analyzing https://a.example"))

    payload = json.loads(context.to_json())

    assert payload["originalAwardId"] == "A1"
    assert payload["findings"][0]["relevanceScore"] == 0.5
    assert payload["findings"][0]["analysis"]["riskLevel"] == 3
    assert payload["findings"][0]["analysis"]["followUpQuestions"] == ["next"]
    assert payload["reasoningChain"]["finalConclusions"] == []
    assert payload["extractedInfo"] == {}

    restored = AwardSearchContext.from_json(context.to_json())
    assert restored == context
    assert restored.is_complete
    assert restored.highest_risk_level == 3


def test_context_without_summary_is_not_complete():
    context = AwardSearchContext(original_award_id="A1", summary="   ")
    assert not context.is_complete
    assert context.highest_risk_level == 0


def test_finding_relevance_must_be_in_unit_range():
    with pytest.raises(ValidationError):
        Finding(content="c", source="s", relevance_score=1.5, analysis=Analysis())


def test_analysis_default():
    analysis = Analysis.default("Analysis process failed (timeout)")
    assert analysis.risk_level == 1
    assert analysis.initial_thoughts == "Analysis failed"
    assert analysis.justification == "Analysis process failed (timeout)"


def test_award_metadata_keeps_unknown_fields():
    metadata = AwardMetadata.coerce(
        {"details": {"recipient": {"recipient_name": "Acme", "uei": "XYZ"}}, "source": "registry"}
    )
    assert metadata.details.recipient.recipient_name == "Acme"
    assert metadata.details.recipient.model_extra == {"uei": "XYZ"}
    assert AwardMetadata.coerce(None) is None
    assert AwardMetadata.coerce(metadata) is metadata


def test_split_into_windows_overlaps():
    text = "abcdefghijklmnopqrstuvwxyz"
    windows = split_into_windows(text, size=10, overlap=4)

    assert windows == ["abcdefghij", "ghijklmnop", "mnopqrstuv", "stuvwxyz"]
    assert split_into_windows("short", size=10, overlap=4) == ["short"]
    assert split_into_windows("  \n ") == []


def test_research_limits_from_settings_clamps_values():
    source = Settings(max_topics=0, max_urls=-3, url_batch_size=0, max_search_time_ms=-1)
    limits = ResearchLimits.from_settings(source)

    assert limits.max_topics == 1
    assert limits.max_urls == 1
    assert limits.url_batch_size == 1
    assert limits.max_search_time_ms == 0


def test_research_limits_defaults():
    limits = ResearchLimits()
    assert (limits.max_retries, limits.max_results_per_query, limits.max_pages_per_site) == (3, 5, 5)
    assert (limits.max_topics, limits.max_urls) == (15, 10)
    assert limits.max_search_time_ms == 20 * 60 * 1000


def test_award_metadata_tolerates_null_sub_objects():
    metadata = AwardMetadata.coerce(
        {
            "details": {
                "recipient": None,
                "executive_details": {"officers": None},
            },
            "transactions": None,
        }
    )

    assert metadata.details.recipient.recipient_name is None
    assert metadata.details.recipient.business_categories == []
    assert metadata.details.executive_details.officers == []
    assert metadata.transactions == []
    assert AwardMetadata.coerce({"details": None}).details.recipient.business_categories == []
    assert AwardMetadata.coerce(
        {"details": {"recipient": {"business_categories": None}}}
    ).details.recipient.business_categories == []
