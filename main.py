"""TangoTales - song enrichment CLI

Runs the multi-phase Gemini enrichment for one tango title and prints the
resulting record.
"""

import argparse
import asyncio
import json
import re
import sys

from tangotales.agents.enrichment_orchestrator import EnrichmentPipeline
from tangotales.errors import GovernorBusyError, SubjectRejectedError
from tangotales.models.events import ProgressUpdate
from tangotales.services.subject_store import JsonFileSubjectStore, get_subject_store


def print_progress(update: ProgressUpdate) -> None:
    marker = "+" if update.completed else "~"
    print(f"[{marker}] ({update.phase_index + 1}/{update.total_phases}) {update.message}")


async def run_enrichment(title: str, subject_id: str | None = None, store_dir: str | None = None) -> int:
    """Enrich one title; returns a process exit code."""
    subject_id = subject_id or re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    store = JsonFileSubjectStore(base_dir=store_dir) if store_dir else get_subject_store()
    await store.create({"id": subject_id, "title": title})

    print(f"Enriching: {title}")
    print("-" * 50)

    pipeline = EnrichmentPipeline(store=store)
    try:
        result = await pipeline.enrich(subject_id, title, progress=print_progress)
    except SubjectRejectedError as exc:
        print(f"\n[!] '{title}' does not look like a tango song: {exc.reason}")
        return 2
    except GovernorBusyError as exc:
        print(f"\n[!] {exc}")
        return 3

    record = result.record_view()
    print(f"\n[*] Enrichment complete: {result.corrected_title}")
    print(f"   Confidence: {result.confidence.value}")
    print(f"   Runtime: {result.metadata.processing_time_ms}ms")
    print(f"   Phases: {result.metadata.successful_turns} ok / {result.metadata.failed_turns} fallback")
    print(f"   Sources: {len(record.sources)}")
    print(f"\n{'=' * 50}")
    print(json.dumps(record.model_dump(mode="json", exclude_none=True), ensure_ascii=False, indent=2))
    return 0


def main():
    parser = argparse.ArgumentParser(description="TangoTales song enrichment")
    parser.add_argument("--title", "-t", required=True, help="Tango song title")
    parser.add_argument("--id", dest="subject_id", help="Subject id (default: slug of the title)")
    parser.add_argument("--store-dir", help="Directory for JSON subject records (default: from config)")

    args = parser.parse_args()

    sys.exit(asyncio.run(run_enrichment(args.title, args.subject_id, args.store_dir)))


if __name__ == "__main__":
    main()
