#!/usr/bin/env python3
"""Ellie command line: schema bootstrap, background workers, retrieval and tuning.

Usage:
    python3 ellie_cli.py init-db
    python3 ellie_cli.py run-worker dedup --org-id acme --once
    python3 ellie_cli.py run-worker all --org-id acme
    python3 ellie_cli.py retrieve "what did we decide about pricing" --org-id acme
    python3 ellie_cli.py evaluate --fixture data/eval.jsonl
    python3 ellie_cli.py tune --fixture data/eval.jsonl --seed 7
"""

import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import asdict, is_dataclass
from typing import Any, Callable, List, Optional

from config import get_config
from lib.errors import EllieError
from lib.log_setup import configure_logging

logger = logging.getLogger("ellie")

WORKER_NAMES = ["ingestion", "dedup", "taxonomy", "synthesis", "injection"]


def _gateway():
    from lib.llm_clients import GatewayCaller, get_llm_provider
    return GatewayCaller.from_config(get_llm_provider())


def build_worker(name: str, org_id: str = ""):
    """Wire one background worker to the SQLite stores and configured providers."""
    from lib.embeddings import get_embeddings_provider

    if name == "ingestion":
        from core.llm.adapters import LLMIngestionExtractor
        from datastore.memorydb.stores import IngestionSQLiteStore
        from ingest.worker import IngestionWorker

        cfg = get_config().ingestion
        extractor = None
        if cfg.use_llm:
            extractor = LLMIngestionExtractor(
                _gateway(),
                max_prompt_chars=cfg.max_prompt_chars,
                max_message_chars=cfg.max_message_chars,
            )
        return IngestionWorker.from_config(IngestionSQLiteStore(), extractor, org_id=org_id)

    if not org_id and name != "injection":
        raise EllieError(f"--org-id is required for the {name} worker")

    if name == "dedup":
        from core.dedup.worker import DedupWorker
        from core.llm.adapters import LLMDedupReviewer
        from datastore.memorydb.stores import DedupSQLiteStore

        return DedupWorker.from_config(DedupSQLiteStore(), LLMDedupReviewer(_gateway()), org_id)

    if name == "taxonomy":
        from core.llm.adapters import LLMTaxonomyClassifier
        from core.taxonomy.classifier import TaxonomyClassifierWorker
        from datastore.memorydb.stores import TaxonomySQLiteStore

        return TaxonomyClassifierWorker.from_config(
            TaxonomySQLiteStore(), LLMTaxonomyClassifier(_gateway()), org_id
        )

    if name == "synthesis":
        from core.llm.adapters import LLMEntitySynthesizer
        from core.synthesis.worker import EntitySynthesisWorker
        from datastore.memorydb.stores import SynthesisSQLiteStore

        store = SynthesisSQLiteStore()
        return EntitySynthesisWorker.from_config(
            store,
            LLMEntitySynthesizer(_gateway()),
            org_id,
            embedder=get_embeddings_provider(),
            embedding_store=store,
        )

    if name == "injection":
        from core.injection.worker import ContextInjectionWorker
        from datastore.memorydb.stores import ContextInjectionSQLiteStore

        return ContextInjectionWorker.from_config(ContextInjectionSQLiteStore(), get_embeddings_provider())

    raise EllieError(f"Unknown worker: {name}")


def _run_once(name: str, worker) -> Any:
    if name in ("dedup", "taxonomy", "synthesis"):
        return worker.run_once(worker.org_id)
    return worker.run_once()


def _jsonable(value: Any) -> Any:
    if is_dataclass(value):
        return asdict(value)
    return value


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def cmd_init_db(args) -> int:
    from datastore.memorydb.schema import init_schema

    path = init_schema()
    print(f"Initialized {path}")
    return 0


def cmd_run_worker(args) -> int:
    names = WORKER_NAMES if args.worker == "all" else [args.worker]
    workers = [(name, build_worker(name, args.org_id)) for name in names]

    if args.once:
        for name, worker in workers:
            result = _run_once(name, worker)
            _print_json({"worker": name, "result": _jsonable(result)})
        return 0

    stop_event = threading.Event()

    def _stop(signum, frame):
        logger.info("[cli] signal %s received, stopping workers", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    if len(workers) == 1:
        workers[0][1].start(stop_event)
        return 0

    threads: List[threading.Thread] = []
    for name, worker in workers:
        thread = threading.Thread(target=worker.start, args=(stop_event,), name=f"ellie-{name}", daemon=True)
        thread.start()
        threads.append(thread)
    logger.info("[cli] started %d workers: %s", len(threads), ", ".join(names))
    while any(t.is_alive() for t in threads):
        for thread in threads:
            thread.join(timeout=1.0)
    return 0


def cmd_retrieve(args) -> int:
    from core.interface.api import retrieve

    _print_json(retrieve(
        args.query,
        org_id=args.org_id,
        room_id=args.room_id,
        project_id=args.project_id,
        limit=args.limit,
    ))
    return 0


def cmd_plan(args) -> int:
    from core.interface.api import retrieval_plan

    _print_json(retrieval_plan(args.query, org_id=args.org_id, room_id=args.room_id, project_id=args.project_id))
    return 0


def cmd_evaluate(args) -> int:
    from core.interface.api import evaluate

    result = evaluate(args.fixture)
    _print_json(result)
    return 0 if result["passed"] else 2


def cmd_tune(args) -> int:
    from core.interface.api import tune

    _print_json(tune(args.fixture, seed=args.seed))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ellie long-term memory engine")
    parser.add_argument("--log-level", default=None, help="debug | info | warning | error")
    sub = parser.add_subparsers(dest="cmd")

    p = sub.add_parser("init-db", help="Create the SQLite schema")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("run-worker", help="Run a background worker")
    p.add_argument("worker", choices=WORKER_NAMES + ["all"])
    p.add_argument("--org-id", default="", help="Organization to process")
    p.add_argument("--once", action="store_true", help="Run a single batch and exit")
    p.set_defaults(func=cmd_run_worker)

    for name, func, help_text in (
        ("retrieve", cmd_retrieve, "Answer a query through the retrieval cascade"),
        ("plan", cmd_plan, "Show the retrieval plan for a query"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("query")
        p.add_argument("--org-id", default="")
        p.add_argument("--room-id", default="")
        p.add_argument("--project-id", default="")
        if name == "retrieve":
            p.add_argument("--limit", type=int, default=0)
        p.set_defaults(func=func)

    p = sub.add_parser("evaluate", help="Evaluate a labeled fixture against the quality gates")
    p.add_argument("--fixture", default=None, help="JSONL fixture (defaults to evaluator.fixture_path)")
    p.set_defaults(func=cmd_evaluate)

    p = sub.add_parser("tune", help="Run one bounded tuning attempt")
    p.add_argument("--fixture", default=None, help="JSONL fixture (defaults to evaluator.fixture_path)")
    p.add_argument("--seed", type=int, default=None, help="Seed for the mutation choice")
    p.set_defaults(func=cmd_tune)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level or get_config().logging.level)
    func: Optional[Callable[[Any], int]] = getattr(args, "func", None)
    if func is None:
        parser.print_help()
        return 0
    try:
        return func(args)
    except (EllieError, OSError, ValueError, RuntimeError) as e:
        print(f"ellie: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
