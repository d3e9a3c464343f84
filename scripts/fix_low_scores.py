"""
Re-analyse contacts stuck with a low lead score.

Contacts whose stored score falls in [--min-score, --max-score] are run
through the LLM analysis again (heuristic scoring when the LLM fails) and
the new score, status and summary are saved.

Usage:
    python scripts/fix_low_scores.py --org org_123
    python scripts/fix_low_scores.py --org org_123 --pipeline pip_456 --max-score 20
    python scripts/fix_low_scores.py --org org_123 --limit 25 --json

Cron example (nightly at 2 AM):
    0 2 * * * cd /path/to/hiro && python scripts/fix_low_scores.py --org org_123 >> logs/fix_scores.log 2>&1
"""

import sys
import os
import argparse
import json

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from hiro.ai.enhanced_analysis import fix_low_scores
from hiro.db import models
from hiro.logging_config import setup_logging


def run(organization_id: str, pipeline_id: str = None, min_score: int = 0,
        max_score: int = 15, limit: int = 100, delay: float = 1.5) -> dict:
    if not models.get_organization(organization_id):
        raise SystemExit(f"[fix-scores] Organization {organization_id} not found")
    if min_score > max_score:
        raise SystemExit("[fix-scores] --min-score cannot be greater than --max-score")

    print(f"[fix-scores] Range {min_score}-{max_score}, limit {limit}"
          f"{f', pipeline {pipeline_id}' if pipeline_id else ''}")
    summary = fix_low_scores(organization_id, pipeline_id=pipeline_id, min_score=min_score,
                             max_score=max_score, limit=limit, delay=delay)

    for r in summary["results"]:
        marker = " (fallback)" if r["usedFallback"] else ""
        print(f"  {r['contactId']}: {r['oldScore']} -> {r['newScore']}{marker}")
    print(f"\n[fix-scores] Complete: {summary['processed']} processed, {summary['updated']} "
          f"updated, {summary['usedFallback']} fallback, {summary['failed']} failed")
    return summary


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Re-analyse contacts with low lead scores")
    parser.add_argument("--org", required=True, help="Organization ID")
    parser.add_argument("--pipeline", default=None, help="Only contacts in this pipeline")
    parser.add_argument("--min-score", type=int, default=0)
    parser.add_argument("--max-score", type=int, default=15)
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--delay", type=float, default=1.5,
                        help="Seconds between contacts (default: 1.5)")
    parser.add_argument("--json", action="store_true", help="Print the summary as JSON")
    args = parser.parse_args()

    setup_logging()
    result = run(args.org, pipeline_id=args.pipeline, min_score=args.min_score,
                 max_score=args.max_score, limit=args.limit, delay=args.delay)
    if args.json:
        print(json.dumps(result, indent=2))
