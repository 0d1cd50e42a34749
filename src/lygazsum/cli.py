from __future__ import annotations

import argparse
import dataclasses
import json
import logging

from .config import ConfigError, get_gemini_api_key, load_config
from .errors import AnalyzerConfigError
from .llm.analyzer import build_analyzer
from .models import AnalysisStatus, GazetteAgenda
from .rescuer import rescue_stuck_analyses
from .storage import (
    count_contents_by_status,
    get_content,
    init_db,
    insert_content,
    list_contents,
    list_job_states,
    upsert_agenda,
)
from .utils import configure_logging, log_event
from .worker import run_analysis_batch


def _setup_logging() -> logging.Logger:
    return configure_logging("lygazsum")


def _load(args: argparse.Namespace, logger: logging.Logger):
    try:
        return load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None


def _cmd_analyze(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    api_key = get_gemini_api_key()
    if not api_key:
        log_event(logger, logging.ERROR, "missing_api_key", env="GEMINI_API_KEY")
        return 1
    try:
        analyzer = build_analyzer(config, api_key=api_key, logger=logger)
    except AnalyzerConfigError as exc:
        log_event(logger, logging.ERROR, "analyzer_config_error", error=str(exc))
        return 1
    conn = init_db(config.paths.state_db)
    try:
        summary = run_analysis_batch(conn, config, analyzer, logger)
    finally:
        conn.close()
    logger.info(json.dumps(summary.to_payload(), indent=2, ensure_ascii=False))
    return 0 if summary.success else 1


def _cmd_rescue(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        summary = rescue_stuck_analyses(conn, config, logger)
    finally:
        conn.close()
    logger.info(json.dumps(summary.to_payload(), indent=2, ensure_ascii=False))
    return 0 if summary.success else 1


def _cmd_contents_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        content_id = insert_content(conn, args.url)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "content_added", content_id=content_id, url=args.url)
    return 0


def _cmd_contents_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    status = AnalysisStatus(args.status) if args.status else None
    conn = init_db(config.paths.state_db)
    try:
        contents = list_contents(conn, status=status, limit=args.limit)
    finally:
        conn.close()
    for content in contents:
        log_event(
            logger,
            logging.INFO,
            "content",
            content_id=content.id,
            status=content.status.value,
            attempts=content.analysis_attempts,
            shortened_attempts=content.shortened_analysis_attempts,
            error_type=content.error_type.value if content.error_type else None,
            url=content.source_url,
        )
    log_event(logger, logging.INFO, "contents_listed", count=len(contents))
    return 0


def _cmd_contents_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        content = get_content(conn, args.content_id)
    finally:
        conn.close()
    if content is None:
        log_event(logger, logging.ERROR, "content_not_found", content_id=args.content_id)
        return 1
    logger.info(
        json.dumps(dataclasses.asdict(content), indent=2, sort_keys=True, ensure_ascii=False, default=str)
    )
    return 0


def _cmd_agendas_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    agenda = GazetteAgenda(
        agenda_id=args.agenda_id,
        gazette_id=args.gazette_id,
        subject=args.subject,
        category_code=args.category_code,
        source_url=args.url,
        meeting_dates=list(args.meeting_date),
    )
    conn = init_db(config.paths.state_db)
    try:
        upsert_agenda(conn, agenda)
        if args.url and args.enqueue:
            content_id = insert_content(conn, args.url)
            log_event(logger, logging.INFO, "content_added", content_id=content_id, url=args.url)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "agenda_added", agenda_id=args.agenda_id)
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    conn.close()
    log_event(logger, logging.INFO, "db_migrated", path=config.paths.state_db)
    return 0


def _cmd_jobs_status(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = init_db(config.paths.state_db)
    try:
        payload = {
            "jobs": list_job_states(conn),
            "contents_by_status": count_contents_by_status(conn),
        }
    finally:
        conn.close()
    logger.info(json.dumps(payload, indent=2, ensure_ascii=False))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lygazsum")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to LG_CONFIG, then built-in defaults)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze_parser = subparsers.add_parser("analyze", help="Analyze a batch of pending contents")
    analyze_parser.set_defaults(func=_cmd_analyze)

    rescue_parser = subparsers.add_parser("rescue", help="Reset analyses stuck in processing")
    rescue_parser.set_defaults(func=_cmd_rescue)

    contents_parser = subparsers.add_parser("contents", help="Inspect analyzed contents")
    contents_subparsers = contents_parser.add_subparsers(dest="contents_command", required=True)

    contents_add = contents_subparsers.add_parser("add", help="Queue a content URL for analysis")
    contents_add.add_argument("url", help="Gazette content URL")
    contents_add.set_defaults(func=_cmd_contents_add)

    contents_list = contents_subparsers.add_parser("list", help="List contents")
    contents_list.add_argument(
        "--status",
        choices=[status.value for status in AnalysisStatus],
        help="Only list contents in this status",
    )
    contents_list.add_argument("--limit", type=int, default=50, help="Number of contents to show")
    contents_list.set_defaults(func=_cmd_contents_list)

    contents_show = contents_subparsers.add_parser("show", help="Show one content")
    contents_show.add_argument("content_id", type=int, help="Content id")
    contents_show.set_defaults(func=_cmd_contents_show)

    agendas_parser = subparsers.add_parser("agendas", help="Manage gazette agendas")
    agendas_subparsers = agendas_parser.add_subparsers(dest="agendas_command", required=True)

    agendas_add = agendas_subparsers.add_parser("add", help="Add or update an agenda")
    agendas_add.add_argument("--agenda-id", required=True, help="Agenda id")
    agendas_add.add_argument("--gazette-id", required=True, help="Gazette id")
    agendas_add.add_argument("--category-code", type=int, default=None, help="Category code")
    agendas_add.add_argument("--subject", default=None, help="Agenda subject")
    agendas_add.add_argument("--url", default=None, help="Content URL of the agenda")
    agendas_add.add_argument(
        "--meeting-date",
        action="append",
        default=[],
        help="Meeting date (repeatable)",
    )
    agendas_add.add_argument(
        "--enqueue",
        action="store_true",
        help="Also queue the content URL for analysis",
    )
    agendas_add.set_defaults(func=_cmd_agendas_add)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)

    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    jobs_parser = subparsers.add_parser("jobs", help="Scheduled job bookkeeping")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_status = jobs_subparsers.add_parser("status", help="Show last runs and status counts")
    jobs_status.set_defaults(func=_cmd_jobs_status)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)
