#!/usr/bin/env python3
"""Enqueue a pipeline run for one funding source."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from funding_pipeline.core.config import get_settings
from funding_pipeline.core.errors import RunStartError
from funding_pipeline.core.telemetry import configure_pipeline_logging
from funding_pipeline.main import build_pipeline


def build_options(*, force_full_reprocessing: bool, triggered_by: str, notes: str | None) -> dict[str, object]:
    options: dict[str, object] = {
        "force_full_reprocessing": force_full_reprocessing,
        "triggered_by": triggered_by,
    }
    if notes:
        options["notes"] = notes
    return options


async def enqueue(source_id: str, options: dict[str, object]) -> str:
    pipeline = build_pipeline(get_settings())
    try:
        return await pipeline.coordinator.start_run(source_id, options)
    finally:
        await pipeline.store.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Enqueue a pipeline run; a worker picks it up.")
    parser.add_argument("source_id", help="funding_sources.id to process")
    parser.add_argument(
        "--force-full-reprocessing",
        action="store_true",
        help="Send every record to analysis, skipping change detection",
    )
    parser.add_argument("--triggered-by", default="cli", help="Actor label stored with the run options")
    parser.add_argument("--notes", help="Free-form note stored with the run options")
    args = parser.parse_args()

    configure_pipeline_logging()
    options = build_options(
        force_full_reprocessing=args.force_full_reprocessing,
        triggered_by=args.triggered_by,
        notes=args.notes,
    )
    try:
        run_id = asyncio.run(enqueue(args.source_id, options))
    except RunStartError as exc:
        print(json.dumps({"run_id": None, "error": exc.to_dict()}, default=str))
        sys.exit(2)
    print(json.dumps({"run_id": run_id}))


if __name__ == "__main__":
    main()
