#!/usr/bin/env python3
"""
Run a hybrid search against a workflow and print the ranked results.

With the in-memory vector backend nothing survives between runs, so
--ingest can load files into the workflow first.

Usage:
    # Search an existing workflow (qdrant backend)
    python scripts/search_workflow.py -w wf-demo "Lambda storage access"

    # Ingest then search, all in-process
    python scripts/search_workflow.py -w wf-demo --ingest docs/*.txt "cloud storage"

    # Favour graph proximity
    python scripts/search_workflow.py -w wf-demo --vector-weight 0.3 --graph-weight 0.7 "S3"
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from rfp_graphrag.core.config import get_settings  # noqa: E402
from rfp_graphrag.core.logging import setup_logging  # noqa: E402
from rfp_graphrag.core.scope import WorkflowScope  # noqa: E402
from rfp_graphrag.services.context import build_context  # noqa: E402
from rfp_graphrag.services.hybrid_search import SearchOptions, SearchResponse  # noqa: E402
from rfp_graphrag.services.retrieval import (  # noqa: E402
    IngestDocument,
    KnowledgeRetrievalService,
)


def print_response(response: SearchResponse, show_text: int) -> None:
    """Pretty-print a search response."""
    print(f"\n{'='*60}")
    print(f"Query: {response.query}")
    print(f"Mode: {response.mode.value}   Graph: {response.graph_status.value}")
    if response.partial:
        print(f"Partial results (timed out: {response.timed_out or '-'}, failed: {response.failed_stages or '-'})")
    print(f"{'='*60}")

    if not response.results:
        print("No results.")

    for rank, result in enumerate(response.results, start=1):
        print(
            f"\n{rank:>2}. [{result.provenance.value}] combined={result.combined_score:.3f} "
            f"vector={result.vector_score:.3f} graph={result.graph_score:.3f}"
        )
        print(f"    Document: {result.document_id}   Chunk: {result.chunk_id}")
        if result.matched_entities:
            print(f"    Entities: {', '.join(result.matched_entities[:8])}")
        snippet = result.text.replace("\n", " ")
        print(f"    {snippet[:show_text]}{'...' if len(snippet) > show_text else ''}")

    print(f"\n{response.explanation}")
    print(f"{'='*60}\n")


async def run_search(
    workflow_id: str,
    query: str,
    ingest: list[Path],
    options: SearchOptions,
    show_text: int,
) -> None:
    """Optionally ingest files, then search."""
    cfg = get_settings()
    setup_logging(cfg)
    scope = WorkflowScope(workflow_id)

    ctx = build_context(cfg)
    await ctx.connect(start_probe=False)
    try:
        service = KnowledgeRetrievalService(ctx)

        for path in ingest:
            document = IngestDocument(
                document_id=path.stem,
                text=path.read_text(encoding="utf-8"),
                filename=path.name,
            )
            result = await service.process_document(scope, document)
            print(f"Ingested {path.name}: {result['chunk_count']} chunks")
        await service.drain()

        response = await service.hybrid_search(scope, query, options)
        print_response(response, show_text)
    finally:
        await ctx.disconnect()


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Hybrid search over a workflow",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("query", type=str, help="Search query")

    parser.add_argument(
        "--workflow", "-w",
        type=str,
        required=True,
        help="Workflow identifier",
    )

    parser.add_argument(
        "--ingest",
        nargs="+",
        type=Path,
        default=[],
        help="Files to ingest before searching",
    )

    parser.add_argument("--limit", "-n", type=int, default=None, help="Results to return")
    parser.add_argument("--top-k", type=int, default=None, help="Vector candidates to fetch")
    parser.add_argument("--max-hops", type=int, default=None, help="Graph traversal depth")
    parser.add_argument("--vector-weight", type=float, default=None, help="Weight of vector similarity")
    parser.add_argument("--graph-weight", type=float, default=None, help="Weight of graph proximity")

    parser.add_argument(
        "--show-text",
        type=int,
        default=160,
        help="Characters of chunk text to print (default: 160)",
    )

    args = parser.parse_args()

    missing = [str(p) for p in args.ingest if not p.is_file()]
    if missing:
        parser.error(f"Files not found: {', '.join(missing)}")

    options = SearchOptions(
        limit=args.limit,
        top_k=args.top_k,
        max_hops=args.max_hops,
        vector_weight=args.vector_weight,
        graph_weight=args.graph_weight,
    )

    asyncio.run(
        run_search(
            workflow_id=args.workflow,
            query=args.query,
            ingest=args.ingest,
            options=options,
            show_text=args.show_text,
        )
    )


if __name__ == "__main__":
    main()
