from __future__ import annotations

import asyncio
import json
import re
import time
from typing import Any, Sequence

from loguru import logger
from pydantic import BaseModel, ValidationError

from awardprobe.config import settings
from awardprobe.llm_client import ChatCompletionsClient, client as llm_client, get_model
from awardprobe.models.award import AwardMetadata, Location, Transaction
from awardprobe.models.research import Analysis, Finding
from awardprobe.research_core.analysis.chunking import WINDOW_OVERLAP, WINDOW_SIZE, split_into_windows
from awardprobe.research_core.analysis.outcome import AnalysisOutcome, FailureReason
from awardprobe.services import logger as log_service
from awardprobe.services.prompt_store import render_prompt
from awardprobe.services.retry import RetryPolicy

NO_TRANSACTIONS = "No transactions recorded"
NO_TRANSACTION_DATA = "No transaction data available"
TRANSACTION_ANALYSIS_FAILED = "Transaction analysis failed"

_INDICATOR_LINE = re.compile(r"^\s*[-•*\d]")
_INDICATOR_MARKER = re.compile(r"^\s*(?:[-•*]+|\d+[.)])\s*")


def extract_json_object(raw_text: str) -> dict[str, Any]:
    text = raw_text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise json.JSONDecodeError("object not found", text, 0)
    parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("not an object", text, 0)
    return parsed


def harvest_indicators(text: str) -> list[str]:
    """Bullet and numbered lines from free text, markers stripped."""
    indicators: list[str] = []
    for line in text.splitlines():
        if not _INDICATOR_LINE.match(line):
            continue
        cleaned = _INDICATOR_MARKER.sub("", line, count=1).strip()
        if cleaned:
            indicators.append(cleaned)
    return indicators


def _format_amount(value: float | None) -> str:
    if value is None:
        return "0"
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def _format_location(location: Location | None) -> str:
    if location is None:
        return "Unknown"
    return location.format() or "Unknown"


def format_transactions(transactions: Sequence[Transaction | dict[str, Any]]) -> str:
    lines: list[str] = []
    for raw in transactions or []:
        tx = raw if isinstance(raw, Transaction) else Transaction.model_validate(raw)
        lines.append(
            f"- {tx.action_date or 'Unknown date'}: ${_format_amount(tx.federal_action_obligation)}"
            f" - {tx.description or 'No description'}"
        )
    return "\n".join(lines) if lines else NO_TRANSACTIONS


def build_enriched_context(award_metadata: AwardMetadata | dict[str, Any] | None) -> str:
    """Plain-text background on the award shared by every analysis prompt."""
    metadata = AwardMetadata.coerce(award_metadata) or AwardMetadata()
    details = metadata.details
    recipient = details.recipient
    return "\n".join(
        [
            "AWARD OVERVIEW:",
            f"- Award Amount: ${_format_amount(details.total_obligation)}",
            f"- Date Signed: {details.date_signed or 'Unknown'}",
            f"- Type: {details.type_description or 'Unknown'}",
            f"- Description: {details.description or 'No description'}",
            "",
            "RECIPIENT INFORMATION:",
            f"- Name: {recipient.recipient_name or 'Unknown'}",
            f"- Parent Company: {recipient.parent_recipient_name or 'None'}",
            f"- Business Categories: {', '.join(recipient.business_categories)}",
            f"- Location: {_format_location(recipient.location)}",
            "",
            "PERFORMANCE LOCATION:",
            _format_location(details.place_of_performance),
            "",
            "TRANSACTION HISTORY:",
            format_transactions(metadata.transactions),
        ]
    ).strip()


class ContentAnalyzer:
    """Turns award and page text into risk assessments with the configured model.

    Every model call goes through the retry policy and a hard per-call
    timeout. Failures never escape ``analyze``; they come back as a failed
    ``AnalysisOutcome`` and callers fall back to defaults.
    """

    def __init__(
        self,
        *,
        model: str | None = None,
        llm: ChatCompletionsClient | None = None,
        retry: RetryPolicy | None = None,
        timeout_seconds: float | None = None,
        window_size: int = WINDOW_SIZE,
        window_overlap: int = WINDOW_OVERLAP,
    ):
        self.model = model or get_model()
        self.client = llm
        self.retry = retry or RetryPolicy.from_settings()
        self.timeout_seconds = float(
            settings.llm_timeout_seconds if timeout_seconds is None else timeout_seconds
        )
        self.window_size = window_size
        self.window_overlap = window_overlap
        self._transaction_analyses: dict[tuple[str, str], str] = {}

    async def _complete_once(
        self,
        messages: list[dict[str, str]],
        *,
        json_mode: bool,
        caller: str,
    ) -> str:
        active_client = self.client or llm_client()
        t0 = time.monotonic()
        try:
            completion = await asyncio.wait_for(
                active_client.complete(
                    model=self.model,
                    messages=messages,
                    temperature=0,
                    json_mode=json_mode,
                ),
                timeout=self.timeout_seconds,
            )
        except Exception as exc:
            log_service.log_llm_call(
                model=self.model,
                caller=caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=repr(exc),
            )
            raise
        log_service.log_llm_call(
            model=self.model,
            caller=caller,
            input_tokens=completion.usage.input_tokens,
            output_tokens=completion.usage.output_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        return completion.text

    async def analyze(
        self,
        prompt: str,
        context: str,
        schema: type[BaseModel] | None = None,
        *,
        caller: str = "analyzer",
    ) -> AnalysisOutcome[Any]:
        """Run ``prompt`` over every window of ``context``.

        Without a schema the window responses are joined with newlines. With
        a schema only the first window's response is parsed and validated;
        the other windows are not merged into the structured result.
        """
        windows = split_into_windows(context, size=self.window_size, overlap=self.window_overlap)
        if not windows:
            return AnalysisOutcome.failed(FailureReason.EMPTY_CONTEXT, "no content to analyze")

        system: list[dict[str, str]] = []
        if schema is not None:
            system.append({"role": "system", "content": render_prompt("analysis.system_json")})

        async def run_window(index: int, chunk: str) -> str:
            messages = system + [
                {
                    "role": "user",
                    "content": render_prompt("analysis.window_user", prompt=prompt, chunk=chunk),
                }
            ]
            return await self.retry.run(
                lambda: self._complete_once(messages, json_mode=schema is not None, caller=caller),
                label=f"{caller}[window {index}]",
            )

        try:
            responses = await asyncio.gather(
                *(run_window(i, chunk) for i, chunk in enumerate(windows))
            )
        except asyncio.TimeoutError:
            logger.error(f"{caller}: model call timed out after {self.timeout_seconds:.0f}s")
            return AnalysisOutcome.failed(FailureReason.TIMEOUT, f"timed out after {self.timeout_seconds}s")
        except Exception as exc:
            logger.error(f"{caller}: model call failed: {exc!r}")
            return AnalysisOutcome.failed(FailureReason.PROVIDER_ERROR, repr(exc))

        if schema is None:
            return AnalysisOutcome.succeeded("\n".join(r for r in responses if r))

        try:
            payload = extract_json_object(responses[0] or "")
        except json.JSONDecodeError as exc:
            logger.warning(f"{caller}: response is not a JSON object: {exc}")
            return AnalysisOutcome.failed(FailureReason.INVALID_JSON, str(exc))
        try:
            return AnalysisOutcome.succeeded(schema.model_validate(payload))
        except ValidationError as exc:
            logger.warning(f"{caller}: response failed schema validation: {exc}")
            return AnalysisOutcome.failed(FailureReason.SCHEMA_MISMATCH, str(exc))

    async def analyze_transactions(
        self,
        award_id: str,
        transactions: Sequence[Transaction | dict[str, Any]],
    ) -> str:
        history = format_transactions(transactions)
        if history == NO_TRANSACTIONS:
            return NO_TRANSACTION_DATA

        key = (award_id, history)
        cached = self._transaction_analyses.get(key)
        if cached is not None:
            return cached

        outcome = await self.analyze(
            render_prompt("analysis.transactions", award_id=award_id),
            history,
            caller="analyzer.transactions",
        )
        text = outcome.unwrap_or("").strip()
        if not text:
            return TRANSACTION_ANALYSIS_FAILED
        self._transaction_analyses[key] = text
        return text

    async def score_content(
        self,
        page_content: str,
        award_id: str,
        award_metadata: AwardMetadata | dict[str, Any] | None = None,
    ) -> Analysis:
        metadata = AwardMetadata.coerce(award_metadata)
        enriched_context = build_enriched_context(metadata)
        transactions = metadata.transactions if metadata else []
        transaction_analysis = await self.analyze_transactions(award_id, transactions)

        combined = "\n\n".join(
            [
                f"Award Details:\n{enriched_context}",
                f"Related Content:\n{page_content}",
                f"Transaction Analysis:\n{transaction_analysis}",
            ]
        ).strip()

        outcome = await self.analyze(
            render_prompt(
                "analysis.risk_assessment",
                award_id=award_id,
                enriched_context=enriched_context,
            ),
            combined,
            Analysis,
            caller="analyzer.score",
        )
        if not outcome.ok or outcome.value is None:
            logger.info(f"Risk analysis for {award_id} degraded: {outcome.failure}")
            reason = outcome.failure.value if outcome.failure else "unknown"
            return Analysis.default(f"Analysis process failed ({reason})")

        analysis: Analysis = outcome.value
        analysis.indicators.extend(harvest_indicators(transaction_analysis))
        analysis.justification += f"\n\nTransaction Analysis:\n{transaction_analysis}"
        analysis.follow_up_questions = [
            q.strip() for q in analysis.follow_up_questions if isinstance(q, str) and q.strip()
        ]
        return analysis

    async def summarize(self, findings: Sequence[Finding]) -> str:
        """Narrative summary over the findings; empty string when unavailable."""
        if not findings:
            return ""
        serialized = json.dumps([f.model_dump(by_alias=True) for f in findings], ensure_ascii=False)
        outcome = await self.analyze(
            render_prompt("analysis.summary"),
            serialized,
            caller="analyzer.summary",
        )
        return outcome.unwrap_or("").strip()
