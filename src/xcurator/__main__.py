"""CLI entry-point: ``python -m xcurator run`` / ``session`` / ``leaderboard`` / ``schedule``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from xcurator import config
from xcurator.grok_client import GrokClient
from xcurator.guard import ConcurrencyGuard, ScrapeInProgressError
from xcurator.leaderboard import LeaderboardService
from xcurator.llm import LLMWriter
from xcurator.models import Persona, Session
from xcurator.pipeline import log_progress, run_pipeline
from xcurator.retriever import Retriever
from xcurator.retry import UpstreamError
from xcurator.scheduler import SchedulerHandle
from xcurator.searches import load_persona, load_searches, select_searches
from xcurator.sessions import SessionService
from xcurator.store import CuratorStore, NotFoundError
from xcurator.workflow import InvalidTransitionError

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _load_persona(slug: str | None) -> Persona:
    return load_persona(config.persona_path(slug or "default"))


def _retriever() -> Retriever:
    return Retriever(GrokClient(config.require("XAI_API_KEY")))


def _writer() -> LLMWriter | None:
    return LLMWriter(config.OPENROUTER_API_KEY) if config.OPENROUTER_API_KEY else None


def _leaderboards() -> LeaderboardService:
    store = CuratorStore(config.DB_PATH)
    return LeaderboardService(
        store, ConcurrencyGuard(store), _retriever(), _writer(), personas=_load_persona
    )


def _sessions() -> SessionService:
    store = CuratorStore(config.DB_PATH)
    return SessionService(
        store,
        ConcurrencyGuard(store),
        _retriever(),
        _writer(),
        searches=load_searches(config.searches_path()),
        personas=_load_persona,
    )


# ── commands ───────────────────────────────────────────────────────────────


def _run(search: str | None, dry_run: bool) -> int:
    searches = load_searches(config.searches_path())
    if search:
        searches = select_searches(searches, [search])
        if not searches:
            logger.error("No search named %r in %s", search, config.searches_path())
            return 1

    if dry_run:
        logger.info("Dry-run mode; %d search(es) configured:", len(searches))
        for s in searches:
            query = s.to_query()
            logger.info(
                "  [%s] %s (window %s, max %d, handles %s)",
                s.name,
                s.prompt,
                s.time_window,
                s.max_results,
                query.handles or "-",
            )
        return 0

    store = CuratorStore(config.DB_PATH)
    asyncio.run(run_pipeline(searches, _retriever(), store, config.OUTPUT_DIR))
    return 0


def _leaderboard_scrape(board_id: str) -> int:
    service = _leaderboards()
    board = asyncio.run(service.scrape(board_id, log_progress))
    logger.info(
        "Leaderboard %s (%s): %d posts, %d tokens used in total",
        board.id,
        board.name,
        len(board.items),
        board.tokens_used.total,
    )
    for item in service.top(board.id, 10):
        logger.info(
            "  #%s [%d] @%s: %s",
            item.rank,
            item.engagement_score,
            item.handle.lstrip("@"),
            item.text[:100],
        )
    return 0


def _leaderboard_list() -> int:
    for board in _leaderboards().list_all():
        logger.info(
            "%s  %-24s stage=%-9s posts=%-4d last=%s%s",
            board.id,
            board.name,
            board.stage,
            len(board.items),
            board.last_scraped_at.isoformat() if board.last_scraped_at else "never",
            f"  error: {board.last_error}" if board.last_error else "",
        )
    return 0


def _log_session(session: Session) -> None:
    logger.info(
        "%s  %-24s stage=%-9s posts=%-4d searches=%s%s",
        session.id,
        session.name,
        session.stage,
        len(session.items),
        ",".join(session.search_names),
        f"  error: {session.last_error}" if session.last_error else "",
    )
    if session.analysis is not None:
        logger.info("  %s", session.analysis.summary)
    for sample in session.samples:
        marker = "*" if sample.id == session.chosen_id else " "
        logger.info(" %s[%s] (%d/10) %s", marker, sample.id, sample.confidence, sample.text)
    if session.final_output:
        logger.info("  final: %s", session.final_output)


def _session(args: argparse.Namespace) -> int:
    service = _sessions()
    if args.session_command == "create":
        session = service.create(args.name, args.search, args.persona)
    elif args.session_command == "list":
        for session in service.list_all():
            _log_session(session)
        return 0
    elif args.session_command == "scrape":
        session = asyncio.run(service.scrape(args.id, log_progress))
        for item in session.items[:10]:
            logger.info("  [%s] @%s: %s", item.id, item.handle.lstrip("@"), item.text[:100])
    elif args.session_command == "analyze":
        session = asyncio.run(service.analyze(args.id))
    elif args.session_command == "select":
        session = service.select(args.id, args.post_ids, args.instructions)
    elif args.session_command == "generate":
        session = asyncio.run(service.generate(args.id))
    elif args.session_command == "choose":
        session = service.choose(args.id, args.sample_id)
    else:
        return 1
    _log_session(session)
    return 0


async def _schedule() -> None:
    scheduler = SchedulerHandle(_leaderboards())
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="xcurator",
        description="Discover and curate high-engagement posts on X.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command")

    # ── run ────────────────────────────────────────────────────────────
    run_parser = sub.add_parser("run", help="Run the configured searches once.")
    run_parser.add_argument("--search", help="Only run the search with this name.")
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List the searches that would run without calling the backend.",
    )

    # ── leaderboard ───────────────────────────────────────────────────
    lb_parser = sub.add_parser("leaderboard", help="Inspect or scrape leaderboards.")
    lb_sub = lb_parser.add_subparsers(dest="lb_command")
    scrape_parser = lb_sub.add_parser("scrape", help="Scrape one leaderboard now.")
    scrape_parser.add_argument("id", help="Leaderboard id.")
    lb_sub.add_parser("list", help="List leaderboards.")

    # ── session ───────────────────────────────────────────────────────
    s_parser = sub.add_parser("session", help="Step a curation session through its stages.")
    s_sub = s_parser.add_subparsers(dest="session_command")
    create_parser = s_sub.add_parser("create", help="Create a session over configured searches.")
    create_parser.add_argument("name", help="Session name.")
    create_parser.add_argument(
        "--search", action="append", required=True, help="Search name (repeatable)."
    )
    create_parser.add_argument("--persona", help="Persona slug (default: default).")
    s_sub.add_parser("list", help="List sessions.")
    for command, help_text in (
        ("scrape", "Run the session's searches."),
        ("analyze", "Summarize what is trending in the scraped posts."),
        ("generate", "Draft post variations from the selection."),
    ):
        s_sub.add_parser(command, help=help_text).add_argument("id", help="Session id.")
    select_parser = s_sub.add_parser("select", help="Pick source posts and give instructions.")
    select_parser.add_argument("id", help="Session id.")
    select_parser.add_argument("post_ids", nargs="+", help="Post ids to write from.")
    select_parser.add_argument("-i", "--instructions", required=True, help="What to write.")
    choose_parser = s_sub.add_parser("choose", help="Choose the final variation.")
    choose_parser.add_argument("id", help="Session id.")
    choose_parser.add_argument("sample_id", help="Variation id.")

    # ── schedule ──────────────────────────────────────────────────────
    sub.add_parser("schedule", help="Keep leaderboards fresh until interrupted.")

    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    try:
        if args.command == "run":
            code = _run(args.search, args.dry_run)
        elif args.command == "leaderboard" and args.lb_command == "scrape":
            code = _leaderboard_scrape(args.id)
        elif args.command == "leaderboard" and args.lb_command == "list":
            code = _leaderboard_list()
        elif args.command == "session" and args.session_command:
            code = _session(args)
        elif args.command == "schedule":
            asyncio.run(_schedule())
            code = 0
        else:
            parser.print_help()
            code = 1
    except (config.ConfigError, NotFoundError, InvalidTransitionError) as err:
        logger.error("%s", err)
        code = 1
    except (ScrapeInProgressError, UpstreamError) as err:
        logger.error("Scrape failed: %s", err)
        code = 2
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
