#!/usr/bin/env python3
"""Ask questions about a municipality's planning documents.

Answers a single question, or starts an interactive loop when no question
is given.

Usage:
    python scripts/ask_question.py 401 "What is code 20a1?"
    python scripts/ask_question.py 401 --interactive
    python scripts/ask_question.py 401 "Quina és l'alçada màxima?" --top-k 7 --verbose

Environment variables:
    OPENAI_API_KEY: Required for embeddings and answers
    DATABASE_URL: PostgreSQL connection (postgresql+asyncpg://...)
"""

import argparse
import asyncio
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

from planning_qa.core.database import dispose_engine  # noqa: E402
from planning_qa.core.exceptions import PlanningQAError  # noqa: E402
from planning_qa.knowledge.models import RAGResponse  # noqa: E402
from planning_qa.services.municipal_qa import get_qa_service  # noqa: E402


def print_response(response: RAGResponse) -> None:
    metadata = response.metadata
    print("\n" + "=" * 70)
    print(response.answer)
    print("=" * 70)
    print(
        f"Municipality: {metadata.municipality_name} | "
        f"class: {metadata.query_class.value} | top_k: {metadata.top_k} | "
        f"search: {metadata.search_method}"
    )
    print(
        f"Iterations: {metadata.iterations_used} | rewritten: {metadata.queries_rewritten} | "
        f"avg similarity: {metadata.avg_similarity:.3f} | tokens: {metadata.tokens_used} | "
        f"{metadata.elapsed_ms:.0f}ms"
    )
    if metadata.translation.was_translated:
        print(
            f"Translated ({metadata.translation.source_language} -> "
            f"{metadata.translation.target_language}): {metadata.translation.translated_query}"
        )
    for i, source in enumerate(response.sources, 1):
        print(
            f"  [Source {i}] {source.chunk.document_title} - Chunk {source.chunk.chunk_index} "
            f"({source.score * 100:.1f}%)"
        )


async def ask_once(args: argparse.Namespace, question: str) -> bool:
    service = get_qa_service()
    try:
        response = await service.ask(
            args.municipality_id,
            question,
            top_k=args.top_k,
            verbose=args.verbose,
            force_semantic_only=args.semantic_only,
        )
    except (ValueError, PlanningQAError) as e:
        print(f"Error: {e}")
        return False
    print_response(response)
    return True


async def main() -> None:
    parser = argparse.ArgumentParser(description="Ask a municipal planning question")
    parser.add_argument("municipality_id", type=int, help="Municipality ID")
    parser.add_argument("question", nargs="?", help="Question to ask")
    parser.add_argument("--interactive", "-i", action="store_true", help="Interactive mode")
    parser.add_argument("--top-k", type=int, default=None, help="Override retrieval depth")
    parser.add_argument("--semantic-only", action="store_true", help="Disable keyword search")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log pipeline steps")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.question and not args.interactive:
            ok = await ask_once(args, args.question)
            if not ok:
                sys.exit(1)
            return

        print(f"Municipality {args.municipality_id}. Empty line or 'exit' to quit.")
        while True:
            question = input("\nQuestion> ").strip()
            if not question or question.lower() in {"exit", "quit"}:
                break
            await ask_once(args, question)
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
