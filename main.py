"""AwardProbe - award fraud research

Simple CLI for researching federal awards.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from awardprobe.agents.orchestrator import ResearchOrchestrator
from awardprobe.models.research import AwardSearchContext
from awardprobe.services.result_store import ResultStoreError


def load_award_file(path: str) -> dict:
    """Read award metadata JSON (``{details, transactions}``)."""
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"{path}: expected a JSON object")
    return payload


def print_report(context: AwardSearchContext) -> None:
    print(f"\n{'='*50}")
    print(f"AWARD: {context.original_award_id}")
    print(f"{'='*50}")
    print(f"Findings: {len(context.findings)}")
    print(f"Highest risk level: {context.highest_risk_level or 'n/a'}")

    for i, finding in enumerate(context.findings, 1):
        analysis = finding.analysis
        print(f"\n  {i}. [risk {analysis.risk_level}] {finding.source}")
        print(f"     Relevance: {finding.relevance_score:.2f}")
        for indicator in analysis.indicators[:5]:
            print(f"     - {indicator[:120]}")

    print(f"\n{'='*50}")
    print("SUMMARY:")
    print(f"{'='*50}")
    print(context.summary)


async def run_research(
    award_id: str,
    award_file: str | None = None,
    cached_only: bool = False,
    as_json: bool = False,
) -> int:
    """Run or look up research for one award; returns the exit code."""
    orchestrator = ResearchOrchestrator()
    try:
        if cached_only:
            context = await orchestrator.get_cached(award_id)
            if context is None:
                print(f"No cached research for {award_id}", file=sys.stderr)
                return 1
        else:
            metadata = load_award_file(award_file) if award_file else None
            if not as_json:
                print(f"Researching award: {award_id}")
                print("-" * 50)
            context = await orchestrator.start(award_id, metadata)
    finally:
        close = getattr(orchestrator.store, "close", None)
        if close is not None:
            await close()

    if as_json:
        print(context.to_json())
    else:
        print_report(context)
    return 0


def main():
    parser = argparse.ArgumentParser(description="AwardProbe award fraud research")
    parser.add_argument("--award-id", "-a", required=True, help="Award identifier")
    parser.add_argument("--award-file", "-f", help="JSON file with award details and transactions")
    parser.add_argument(
        "--cached",
        action="store_true",
        help="Only print a previously completed report",
    )
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")

    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(run_research(args.award_id, args.award_file, args.cached, args.json)))
    except ResultStoreError as exc:
        print(f"\n[!] Result store error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
