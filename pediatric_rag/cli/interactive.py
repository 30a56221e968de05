import argparse
import asyncio
import logging
import sys
import time
import uuid
from typing import Optional

from ..config import setup_medical_rag
from ..errors import RAGError
from ..models.answers import SubmitResult
from ..models.queries import ContextOverrides, EnhancementOptions
from ..orch.monitor import QueryMonitor
from ..pipeline.medical_rag import MedicalRAG

logger = logging.getLogger("PediatricRAG")


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("PediatricRAG").setLevel(logging.INFO if verbose else logging.WARNING)


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="pediatric_rag",
        description="Ask questions against the Nelson Textbook of Pediatrics.",
    )
    parser.add_argument("--age", help="Patient age or age group, e.g. '5 years' or 'infant'")
    parser.add_argument("--urgency", choices=["low", "medium", "high", "critical"])
    parser.add_argument("--setting", choices=["emergency", "acute_care", "specialty", "general"])
    parser.add_argument(
        "--audience",
        choices=["clinicians", "students", "patients"],
        default="clinicians",
        help="Audience for the enhancement pass",
    )
    parser.add_argument("--no-enhance", action="store_true", help="Skip the enhancement pass")
    parser.add_argument("--health", action="store_true", help="Check collaborators and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show INFO logs")
    return parser.parse_args(argv)


async def process_query_with_monitor(
    rag_instance: MedicalRAG,
    query: str,
    session_id: str,
    args: argparse.Namespace,
    monitor: QueryMonitor,
) -> None:
    """
    Submit a query and report the outcome to the monitor.

    Args:
        rag_instance: The MedicalRAG instance to use
        query: The user's query
        session_id: Identifies this CLI session for rate limiting
        args: Parsed command line options
        monitor: The QueryMonitor to update with progress and results
    """
    try:
        result = await rag_instance.submit(
            query,
            overrides=ContextOverrides(age=args.age, urgency=args.urgency, setting=args.setting),
            enhancement=EnhancementOptions(
                enabled=not args.no_enhance, target_audience=args.audience
            ),
            client_id=session_id,
            observer=monitor,
        )
    except RAGError as e:
        monitor.on_workflow_failed(e.message)
        return
    monitor.on_workflow_completed(result)


def print_banner():
    """Print a banner for the application."""
    banner = """
╭───────────────────────────────────────────────╮
│                                               │
│        Pediatric Reference Assistant          │
│      Nelson Textbook of Pediatrics RAG        │
│                                               │
╰───────────────────────────────────────────────╯
    """
    print(banner)


def print_result(result: SubmitResult) -> None:
    print("┌─" + "─" * 58 + "┐")
    print(f"│ ANSWER  (confidence {result.confidence:.2f})".ljust(60) + "│")
    print("└─" + "─" * 58 + "┘")
    print(result.answer)
    if result.sources:
        print("\n📚 Sources:")
        for i, source in enumerate(result.sources, 1):
            print(f"   {i}. {source}")
    if result.warnings:
        print("\n⚠️  Notes:")
        for warning in result.warnings:
            print(f"   - {warning}")
    if result.cache_hit:
        print("\n(served from cache)")
    print("─" * 60)


async def print_health(rag_instance: MedicalRAG) -> None:
    report = await rag_instance.health()
    print(f"Overall: {report.status}")
    for name in ("embedding", "corpus", "primary_generation", "secondary_generation"):
        status = getattr(report, name)
        latency = f" ({status.latency_ms:.0f}ms)" if status.latency_ms is not None else ""
        detail = f" - {status.detail}" if status.detail else ""
        print(f"  {name:<22} {status.status}{latency}{detail}")


async def interactive_main(args: argparse.Namespace):
    """Main function for interactive CLI mode."""

    print_banner()
    print("Initializing Pediatric RAG System...")
    try:
        medical_rag_instance = await setup_medical_rag()
        print("✓ System Initialized Successfully")
    except Exception as e:
        print(f"✗ Error initializing system: {e}")
        return

    try:
        if args.health:
            await print_health(medical_rag_instance)
            return

        session_id = f"cli_user_{uuid.uuid4().hex[:8]}"
        print(f"Session ID: {session_id}")
        print("\nEnter your pediatric questions below. Type 'quit' to exit.")
        print("─" * 60)

        while True:
            user_query = input("\n> ")
            if not user_query:
                continue

            if user_query.lower() in ('quit', 'exit', 'q'):
                print("\nEnding session...")
                break

            print("\n🔍 Processing your question...")
            start_time = time.time()

            monitor = QueryMonitor()
            status_task = asyncio.create_task(monitor.display_progress())
            await process_query_with_monitor(
                medical_rag_instance, user_query, session_id, args, monitor
            )
            await status_task

            elapsed_time = time.time() - start_time
            print(f"\n⏱️  Query processed in {elapsed_time:.2f} seconds\n")
            if monitor.result is not None:
                print_result(monitor.result)
            else:
                print(f"❌ {monitor.error or 'Unable to answer this question.'}")

    except (KeyboardInterrupt, EOFError):
        print("\n\nSession interrupted by user. Shutting down...")
    finally:
        print("\nClosing connection...")
        await medical_rag_instance.close()


def main(argv: Optional[list] = None):
    """Entry point for the CLI."""
    args = parse_args(argv)
    configure_logging(args.verbose)
    try:
        asyncio.run(interactive_main(args))
    except Exception as e:
        print(f"\n❌ Fatal error: {e}")
        logging.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
