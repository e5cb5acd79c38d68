#!/usr/bin/env python3
"""Developer CLI for the store assistant RAG pipeline: ask, probe, stats."""

import argparse
import asyncio
import logging
import sys
import time

from core.config import settings


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )


def print_result(result) -> None:
    print(f"\nRetrieved chunks ({len(result.chunks)}):")
    for i, chunk in enumerate(result.chunks, 1):
        preview = chunk.content[:100].replace("\n", " ")
        print(f"  {i}. [{chunk.similarity:.3f}] {chunk.entity_type.value}:{chunk.entity_id}"
              f" #{chunk.chunk_index} {preview}...")

    print(f"\nContext blocks ({len(result.context_blocks)}):")
    for i, block in enumerate(result.context_blocks, 1):
        print(f"  {i}. [{block.similarity:.3f}] {block.source_type.value}:{block.source_id}"
              f" chunks={len(block.chunk_ids)} chars={len(block.content)}")
        if block.title:
            print(f"     Title: {block.title}")
        if block.url:
            print(f"     URL: {block.url}")

    print(f"\nEvidence ({len(result.evidence)}):")
    for i, ev in enumerate(result.evidence, 1):
        print(f"  {i}. [{ev.score:.3f}] {ev.source_type.value}:{ev.source_id}"
              f" chunk_ids={','.join(ev.chunk_ids)}")

    print(f"\nSystem prompt ({len(result.prompts.system_prompt)} chars):")
    print(result.prompts.system_prompt[:300] + "...")
    print(f"\nUser prompt:\n{result.prompts.user_prompt}")


async def cmd_ask(args: argparse.Namespace) -> None:
    """Run retrieval + context building for a query and print everything."""
    from core.models import RetrievalPolicy, RetrievalRequest
    from generation.generator import generate_answer
    from pipeline.rag_pipeline import build_pipeline_from_settings

    if args.permissive:
        policy = RetrievalPolicy.permissive(
            top_k=args.top_k, similarity_threshold=args.threshold
        )
    else:
        policy = RetrievalPolicy.from_settings(
            top_k=args.top_k, similarity_threshold=args.threshold
        )

    pipeline = await build_pipeline_from_settings()
    request = RetrievalRequest(
        tenant_id=args.tenant,
        site_id=args.site,
        query_text=args.question,
        source_types=args.types,
    )

    print(f"Query: {args.question}")
    start = time.perf_counter()
    try:
        result = await pipeline.run(request, policy)
        print(f"Pipeline completed in {(time.perf_counter() - start) * 1000:.0f}ms")
        print_result(result)

        if args.answer:
            answer = await generate_answer(result.chat, result.evidence)
            print(f"\nAnswer: {answer.text}")
    finally:
        await pipeline.retriever.vector_store.close()


async def cmd_probe(args: argparse.Namespace) -> None:
    """Report which search strategy the database supports."""
    from storage.vector_store import PostgresVectorStore, create_engine_from_settings

    store = await PostgresVectorStore.connect(create_engine_from_settings())
    print(f"Search function: {settings.search_function}")
    print(f"Strategy: {store.strategy.name}")
    await store.close()


async def cmd_stats(args: argparse.Namespace) -> None:
    """Show embedding count for one tenant/site."""
    from storage.vector_store import PostgresVectorStore, create_engine_from_settings

    store = await PostgresVectorStore.connect(create_engine_from_settings())
    total = await store.count(args.tenant, args.site)
    print(f"Embedded chunks for site {args.site}: {total}")
    await store.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Store assistant RAG pipeline CLI")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # ask
    p_ask = subparsers.add_parser("ask", help="Run the pipeline for a question")
    p_ask.add_argument("question", help="Question to ask")
    p_ask.add_argument("--tenant", required=True, help="Tenant id")
    p_ask.add_argument("--site", required=True, help="Site id")
    p_ask.add_argument("--types", nargs="*", default=None,
                       help="Source types to search (product, page, policy)")
    p_ask.add_argument("--top-k", type=int, default=settings.top_k)
    p_ask.add_argument("--threshold", type=float, default=settings.similarity_threshold)
    p_ask.add_argument("--permissive", action="store_true",
                       help="Drop disallowed source types instead of failing")
    p_ask.add_argument("--answer", action="store_true", help="Also generate an answer")

    # probe
    subparsers.add_parser("probe", help="Show the selected search strategy")

    # stats
    p_stats = subparsers.add_parser("stats", help="Show embedding count for a site")
    p_stats.add_argument("--tenant", required=True, help="Tenant id")
    p_stats.add_argument("--site", required=True, help="Site id")

    args = parser.parse_args()
    setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    commands = {
        "ask": cmd_ask,
        "probe": cmd_probe,
        "stats": cmd_stats,
    }
    asyncio.run(commands[args.command](args))


if __name__ == "__main__":
    main()
