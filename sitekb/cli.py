"""Command line entrypoint.

Usage:
    python -m sitekb.cli init-db
    python -m sitekb.cli initialize SITE_ID
    python -m sitekb.cli refresh SITE_ID
    python -m sitekb.cli delete SITE_ID
    python -m sitekb.cli status SITE_ID
    python -m sitekb.cli query SITE_ID "what services do you offer?"
    python -m sitekb.cli serve --host 0.0.0.0 --port 8000

Pipeline commands run synchronously in this process and honour the same
per-site lock backend as the API (set LOCK_BACKEND=redis to share it).
"""
import argparse
import json
import logging
from typing import List, Optional

import uvicorn

from sitekb import services
from sitekb.config import settings
from sitekb.db import init_db
from sitekb.obs import configure_tracing
from sitekb.schemas import RAGQuery

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Per-site knowledge base: crawl, embed, retrieve, generate.")
    parser.add_argument(
        "--log-level",
        default=settings.LOG_LEVEL,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity (default: LOG_LEVEL setting)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the relational tables")
    for name, help_text in (
        ("initialize", "Enable and build the knowledge base of a site"),
        ("refresh", "Re-crawl and re-embed an enabled knowledge base"),
        ("delete", "Wipe a site's knowledge base and disable it"),
        ("status", "Show the pipeline status of a site"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("site_id")

    q = sub.add_parser("query", help="Ask a question against a site's knowledge base")
    q.add_argument("site_id")
    q.add_argument("text")
    q.add_argument("--context-type", default=None, help="Restrict retrieval to one document type")
    q.add_argument("--max-results", type=int, default=None)
    q.add_argument("--threshold", type=float, default=None, help="Minimum similarity score")

    s = sub.add_parser("serve", help="Run the HTTP API")
    s.add_argument("--host", default="0.0.0.0")
    s.add_argument("--port", type=int, default=8000)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    if args.command == "serve":
        uvicorn.run("sitekb.main:app", host=args.host, port=args.port, log_level=args.log_level.lower())
        return

    init_db()
    if args.command == "init-db":
        print("[INIT-DB] relational tables ready")
        return

    configure_tracing()

    try:
        if args.command == "initialize":
            result = services.initialize_knowledge_base(args.site_id)
        elif args.command == "refresh":
            result = services.refresh_knowledge_base(args.site_id)
        elif args.command == "delete":
            result = services.delete_knowledge_base(args.site_id)
        elif args.command == "status":
            result = services.get_knowledge_base_status(args.site_id)
        else:
            result = services.process_query(
                RAGQuery(
                    site_id=args.site_id,
                    query=args.text,
                    context_type=args.context_type,
                    max_results=args.max_results,
                    similarity_threshold=args.threshold,
                )
            )
    except Exception:
        logger.exception("Command %s failed", args.command)
        raise

    if result is None:
        print(json.dumps({"site_id": args.site_id, "status": "not_found"}))
    else:
        print(json.dumps(result.model_dump(mode="json"), indent=2))


if __name__ == "__main__":
    main()
