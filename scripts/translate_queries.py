#!/usr/bin/env python3
"""Translate a file of questions into a municipality's document language.

Reads one question per line (blank lines and lines starting with '#' are
skipped) and prints the translations as JSON.

Usage:
    python scripts/translate_queries.py 401 questions.txt
    python scripts/translate_queries.py 401 questions.txt --concurrency 2 -o out.json

Environment variables:
    OPENAI_API_KEY: Required for translation
    DATABASE_URL: PostgreSQL connection (postgresql+asyncpg://...)
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add project root to path for imports
project_dir = Path(__file__).parent.parent
sys.path.insert(0, str(project_dir))

from dotenv import load_dotenv

env_path = project_dir / ".env"
if env_path.exists():
    load_dotenv(env_path)

from planning_qa.core.config import get_rag_config  # noqa: E402
from planning_qa.core.database import dispose_engine, get_session_factory  # noqa: E402
from planning_qa.services.municipal_qa import MunicipalQAService  # noqa: E402
from planning_qa.services.openai_client import get_openai_client  # noqa: E402


def read_questions(path: Path) -> list[str]:
    with open(path, encoding="utf-8") as f:
        lines = [line.strip() for line in f]
    return [line for line in lines if line and not line.startswith("#")]


async def main() -> None:
    parser = argparse.ArgumentParser(description="Batch-translate planning questions")
    parser.add_argument("municipality_id", type=int, help="Municipality ID")
    parser.add_argument("questions_file", type=Path, help="File with one question per line")
    parser.add_argument("--concurrency", type=int, default=None, help="Worker pool size (1-8)")
    parser.add_argument("--pacing", type=float, default=None, help="Seconds between calls")
    parser.add_argument("--output", "-o", type=Path, default=None, help="Write JSON here")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    if not args.questions_file.exists():
        print(f"Error: {args.questions_file} not found")
        sys.exit(1)

    questions = read_questions(args.questions_file)
    if not questions:
        print("Error: no questions found")
        sys.exit(1)

    overrides = {}
    if args.concurrency is not None:
        overrides["batch_concurrency"] = max(1, min(args.concurrency, 8))
    if args.pacing is not None:
        overrides["batch_pacing_seconds"] = max(0.0, args.pacing)
    config = get_rag_config().model_copy(update=overrides)

    service = MunicipalQAService.create(config, get_session_factory(), get_openai_client())
    try:
        translations = await service.translate_batch(questions, args.municipality_id)
    finally:
        await dispose_engine()

    payload = json.dumps(
        [t.model_dump() for t in translations], ensure_ascii=False, indent=2
    )
    if args.output:
        args.output.write_text(payload, encoding="utf-8")
        print(f"Wrote {len(translations)} translations to {args.output}")
    else:
        print(payload)


if __name__ == "__main__":
    asyncio.run(main())
