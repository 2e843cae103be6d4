#!/usr/bin/env python3
"""
Ingest text documents into a workflow.

This script provides a command-line interface to:
1. Chunk and embed documents into the vector index
2. Extract entities and relationships into the workflow knowledge graph
3. Show the workflow's graph statistics

Re-running it on the same files is safe: graph ingestion is idempotent, so
it also serves as the repair path after a failed or partial ingestion.

Usage:
    # Ingest files with the mock LLM (no API calls)
    python scripts/ingest_documents.py --workflow wf-demo --provider mock docs/*.txt

    # Ingest using Google Gemini
    python scripts/ingest_documents.py --workflow wf-demo --provider gemini docs/rfp.md

    # Graph extraction only (skip the vector index)
    python scripts/ingest_documents.py --workflow wf-demo --graph-only docs/rfp.md

    # Show graph statistics
    python scripts/ingest_documents.py --workflow wf-demo --stats

Requirements:
    - Graph database reachable at DATABASE_URL (or a sqlite+aiosqlite URL)
    - API keys configured in .env (for gemini)
"""

import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Add project root to path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from rfp_graphrag.core.config import get_settings  # noqa: E402
from rfp_graphrag.core.logging import get_logger, setup_logging  # noqa: E402
from rfp_graphrag.core.scope import WorkflowScope  # noqa: E402
from rfp_graphrag.services.context import build_context  # noqa: E402
from rfp_graphrag.services.retrieval import (  # noqa: E402
    IngestDocument,
    KnowledgeRetrievalService,
)

logger = get_logger(__name__)


async def show_stats(service: KnowledgeRetrievalService, scope: WorkflowScope) -> dict:
    """Show graph statistics of one workflow."""
    graph = await service.get_workflow_graph(scope)
    stats = graph.stats

    print(f"\nWorkflow {scope.workflow_id}:")
    print(f"  Documents:          {stats['document_count']}")
    print(f"  Entities:           {stats['entity_count']}")
    print(f"  Relationships:      {stats['relationship_count']}")
    print(f"  Mentions:           {stats['mention_count']}")
    for entity_type, count in sorted(stats["entity_types"].items()):
        print(f"    {entity_type:<18}{count}")
    print(f"  Graph status:       {service.controller.health().value}")

    return stats


async def run_ingestion(
    workflow_id: str,
    paths: list[Path],
    provider: str,
    graph_only: bool,
    stats_only: bool,
) -> None:
    """Run ingestion over the given files."""
    cfg = get_settings().model_copy(update={"llm_extractor": provider})
    setup_logging(cfg)
    scope = WorkflowScope(workflow_id)

    ctx = build_context(cfg)
    await ctx.connect(start_probe=False)
    try:
        service = KnowledgeRetrievalService(ctx)

        if stats_only:
            await show_stats(service, scope)
            return

        start_time = datetime.now()

        print(f"\n{'='*60}")
        print("Document Ingestion")
        print(f"{'='*60}")
        print(f"Workflow:             {workflow_id}")
        print(f"Files:                {len(paths)}")
        print(f"Provider:             {provider}")
        print(f"Graph only:           {graph_only}")
        print(f"Graph status:         {ctx.controller.health().value}")
        print(f"{'='*60}\n")

        total_entities = 0
        total_chunks = 0
        deferred = 0

        for i, path in enumerate(paths, start=1):
            text = path.read_text(encoding="utf-8")
            document = IngestDocument(document_id=path.stem, text=text, filename=path.name)
            print(f"[{i}/{len(paths)}] {path.name}")

            if not graph_only:
                indexed = await service.process_document(scope, document)
                total_chunks += indexed["chunk_count"]
                print(f"  Chunks indexed:     {indexed['chunk_count']}")
                await service.drain()
                continue

            result = await service.process_for_graph(
                scope, document.document_id, text, filename=document.filename
            )
            total_entities += result["entities_extracted"]
            if result["status"] == "deferred":
                deferred += 1
            print(f"  Entities:           {result['entities_extracted']} ({result['status']})")

        await service.drain()
        elapsed = (datetime.now() - start_time).total_seconds()

        # Summary
        print(f"\n{'='*60}")
        print("Summary")
        print(f"{'='*60}")
        print(f"Documents:            {len(paths)}")
        if not graph_only:
            print(f"Chunks indexed:       {total_chunks}")
        else:
            print(f"Entities extracted:   {total_entities}")
            print(f"Deferred:             {deferred}")
        print(f"Time elapsed:         {elapsed:.1f}s")
        print(f"{'='*60}\n")

        await show_stats(service, scope)
    finally:
        await ctx.disconnect()


def main() -> None:
    """CLI entry point."""
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Ingest text documents into a workflow",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Ingest with the mock LLM
    python scripts/ingest_documents.py -w wf-demo -p mock docs/*.txt

    # Extract into the graph only
    python scripts/ingest_documents.py -w wf-demo --graph-only docs/rfp.md

    # Show graph statistics
    python scripts/ingest_documents.py -w wf-demo --stats
        """,
    )

    parser.add_argument(
        "files",
        nargs="*",
        type=Path,
        help="Text or markdown files to ingest (file stem becomes the document id)",
    )

    parser.add_argument(
        "--workflow", "-w",
        type=str,
        required=True,
        help="Workflow identifier",
    )

    parser.add_argument(
        "--provider", "-p",
        type=str,
        default=settings.llm_extractor,
        choices=["gemini", "mock"],
        help=f"LLM provider to use (default: {settings.llm_extractor})",
    )

    parser.add_argument(
        "--graph-only",
        action="store_true",
        help="Only extract into the knowledge graph (skip the vector index)",
    )

    parser.add_argument(
        "--stats",
        action="store_true",
        help="Show workflow graph statistics only",
    )

    args = parser.parse_args()

    missing = [str(p) for p in args.files if not p.is_file()]
    if missing:
        parser.error(f"Files not found: {', '.join(missing)}")
    if not args.files and not args.stats:
        parser.error("No files given")

    asyncio.run(
        run_ingestion(
            workflow_id=args.workflow,
            paths=args.files,
            provider=args.provider,
            graph_only=args.graph_only,
            stats_only=args.stats,
        )
    )


if __name__ == "__main__":
    main()
