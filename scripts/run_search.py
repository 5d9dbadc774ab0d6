#!/usr/bin/env python
"""
Run one evidence search in-process and print the answer.

Usage: python scripts/run_search.py "糖尿病の治療" [--language en] [--literature-only]
"""

import argparse
import asyncio
import json
import logging
import sys

from medevidence.literature.cache import get_literature_cache
from medevidence.llm.citations import CitationResolver, render_markdown
from medevidence.models import SearchQuery
from medevidence.worker import build_pipeline


async def run(args: argparse.Namespace) -> int:
    query = SearchQuery(
        query=args.query,
        max_results=args.max_results,
        literature_only=args.literature_only,
        response_language=args.language,
    )
    pipeline = build_pipeline()
    try:
        answer = await pipeline.run("cli", query)
    finally:
        await get_literature_cache().close()

    segments = CitationResolver().resolve(
        answer.text, answer.literature_records, answer.web_records, answer.user_records
    )
    if args.json:
        print(json.dumps(answer.to_dict(), ensure_ascii=False, indent=2))
    else:
        print(f"Outcome: {answer.outcome.value}")
        print(f"Translated query: {answer.translated_query}\n")
        print(render_markdown(segments))
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a MedEvidence search")
    parser.add_argument("query")
    parser.add_argument("--max-results", type=int, default=5)
    parser.add_argument("--language", default="ja")
    parser.add_argument("--literature-only", action="store_true")
    parser.add_argument("--json", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
