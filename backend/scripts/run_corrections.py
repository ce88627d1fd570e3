#!/usr/bin/env python3
"""
Run a correction pass for an audit file from the command line.

The audit file is YAML or JSON with ``novel_content`` and ``reports``; the
manuscript text can also be given separately with ``--manuscript``.

Run from backend/:
    python3 scripts/run_corrections.py audit.yaml --db ../data/galley.db
    python3 scripts/run_corrections.py audit.yaml --auto-approve --output corrected.md
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from uuid import uuid4

import yaml

# ── ensure backend root is on sys.path so bare imports work ──
BACKEND_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BACKEND_ROOT))

from core.engine_config import EngineConfig  # noqa: E402
from core.llm_client import create_llm_client  # noqa: E402
from models import ManuscriptAudit  # noqa: E402
from services.correction_service import CorrectionService  # noqa: E402
from storage import ManuscriptStore  # noqa: E402

logger = logging.getLogger("galley.scripts.run_corrections")


def load_audit(path: Path, manuscript_path: Path = None) -> ManuscriptAudit:
    # yaml.safe_load also reads plain JSON.
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if manuscript_path is not None:
        data["novel_content"] = manuscript_path.read_text(encoding="utf-8")
    data.setdefault("id", str(uuid4()))
    return ManuscriptAudit.model_validate(data)


def print_progress(progress):
    print(f"[{progress.phase}] {progress.current}/{progress.total} {progress.message}")


async def run(args) -> int:
    store = ManuscriptStore(args.db)
    audit = store.add_audit(load_audit(Path(args.audit), Path(args.manuscript) if args.manuscript else None))
    llm_client = create_llm_client(args.provider)
    config = EngineConfig(rate_limit_delay=args.delay, repetition_delay=args.delay)
    service = CorrectionService(store, llm_client, config)

    manuscript = await service.start_correction_run(audit.id, on_progress=print_progress)
    logger.info("correction run finished manuscript_id=%s status=%s", manuscript.id, manuscript.status.value)
    print(f"manuscript={manuscript.id} status={manuscript.status.value}")
    for record in manuscript.pending_corrections:
        print(
            f"  {record.id} [{record.status.value}] {record.kind.value} {record.location or '-'}: "
            f"{record.original_text[:60]!r} -> {record.corrected_text[:60]!r}"
        )

    if args.auto_approve:
        result = await service.auto_approve_all(manuscript.id)
        print(f"auto-approve approved={result['approved']} skipped={result['skipped']}")
    if args.resolve_structural:
        result = await service.auto_resolve_structural(manuscript.id)
        print(f"structural resolved={len(result['resolved'])} failed={len(result['failed'])}")

    usage = llm_client.usage
    print(
        f"llm calls={usage.calls} input_tokens={usage.input_tokens} "
        f"output_tokens={usage.output_tokens} cost_usd={usage.cost_usd:.4f}"
    )

    if args.output:
        final = service.get_manuscript(manuscript.id)
        Path(args.output).write_text(final.corrected_content, encoding="utf-8")
        print(f"corrected manuscript written to {args.output}")
    return 0 if manuscript.status.value != "error" else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Turn audit issues into reviewable manuscript corrections.")
    parser.add_argument("audit", help="audit file (YAML or JSON)")
    parser.add_argument("--manuscript", help="manuscript text file, overrides novel_content")
    parser.add_argument("--db", default=str(BACKEND_ROOT / ".." / "data" / "galley.db"))
    parser.add_argument("--provider", default="deepseek", choices=["deepseek", "openai", "minimax"])
    parser.add_argument("--delay", type=float, default=0.5, help="pause between generative calls, seconds")
    parser.add_argument("--auto-approve", action="store_true")
    parser.add_argument("--resolve-structural", action="store_true")
    parser.add_argument("--output", help="write the working content here when done")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
