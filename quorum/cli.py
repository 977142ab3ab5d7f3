"""Command line interface for quorum."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict

from quorum.analysis import build_structural_brief, compute_explore, compute_structural_analysis
from quorum.analysis.artifact import normalize_artifact
from quorum.audit import AuditLog
from quorum.concierge.orchestrator import ConciergeOrchestrator
from quorum.config import Config, get_config
from quorum.errors import QuorumError
from quorum.events import MessageBus
from quorum.models.registry import ProviderRegistry
from quorum.store import SessionStore
from quorum.workflow.compiler import WorkflowCompiler
from quorum.workflow.context import ContextResolver
from quorum.workflow.engine import WorkflowEngine
from quorum.workflow.requests import parse_request


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2))


def _read_artifact(path: str) -> Any:
    text = sys.stdin.read() if path == "-" else Path(path).read_text()
    return normalize_artifact(text, strict=True)


def _engine(config: Config, store: SessionStore) -> WorkflowEngine:
    bus = MessageBus()
    bus.subscribe(AuditLog(config.data_dir / "audit.jsonl").record)
    registry = ProviderRegistry.from_config(config.providers)
    return WorkflowEngine.from_config(config, registry, store=store, bus=bus)


def _run_workflow(config: Config, payload: Dict[str, Any]) -> Dict[str, Any]:
    store = SessionStore(config.data_dir)
    engine = _engine(config, store)
    request = parse_request(payload)
    resolved = ContextResolver(store).resolve(request)
    workflow = WorkflowCompiler(default_mapper=config.mapper).compile(request, resolved)
    result = asyncio.run(engine.execute(workflow))
    return result.to_dict()


def cmd_analyze(args: argparse.Namespace) -> None:
    analysis = compute_structural_analysis(_read_artifact(args.artifact))
    if args.brief:
        print(build_structural_brief(analysis))
    else:
        _print(analysis.to_dict())


def cmd_explore(args: argparse.Namespace) -> None:
    _print(compute_explore(args.query, _read_artifact(args.artifact)).to_dict())


def cmd_run(args: argparse.Namespace) -> None:
    config = get_config()
    providers = args.provider or config.provider_ids
    payload: Dict[str, Any] = {
        "user_message": args.query,
        "providers": providers,
        "include_mapping": not args.no_mapping,
        "mapper": args.mapper,
    }
    if args.session:
        payload.update(type="extend", session_id=args.session, forced_context_reset=args.reset or [])
    else:
        payload.update(type="initialize")
    _print(_run_workflow(config, payload))


def cmd_recompute(args: argparse.Namespace) -> None:
    config = get_config()
    _print(_run_workflow(config, {
        "type": "recompute",
        "session_id": args.session,
        "source_turn_id": args.turn,
        "step_type": args.step,
        "target_provider": args.provider,
        "user_message": args.message,
    }))


def cmd_concierge(args: argparse.Namespace) -> None:
    config = get_config()
    store = SessionStore(config.data_dir)
    orchestrator = ConciergeOrchestrator.from_config(config, _engine(config, store), store)
    reply = asyncio.run(orchestrator.handle_turn(args.session, args.message))
    _print(reply.to_dict())


def cmd_sessions(args: argparse.Namespace) -> None:
    config = get_config()
    store = SessionStore(config.data_dir)
    if args.sessions_cmd == "list":
        _print({"sessions": store.list_sessions(limit=args.limit)})
    elif args.sessions_cmd == "show":
        _print(store.load(args.session_id).to_dict())


def cmd_serve(args: argparse.Namespace) -> None:
    from quorum.server import main as serve
    serve()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="quorum")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    analyze = sub.add_parser("analyze", help="Structural analysis of a claim-map artifact")
    analyze.add_argument("--artifact", required=True, help="Path to artifact JSON, or - for stdin")
    analyze.add_argument("--brief", action="store_true", help="Print the prose brief instead of JSON")

    explore = sub.add_parser("explore", help="Dimension coverage and outlier ranking")
    explore.add_argument("--query", required=True)
    explore.add_argument("--artifact", required=True)

    run = sub.add_parser("run", help="Fan a query out to providers")
    run.add_argument("--query", required=True)
    run.add_argument("--provider", action="append", help="Provider id (repeatable)")
    run.add_argument("--session", help="Extend an existing session")
    run.add_argument("--mapper")
    run.add_argument("--no-mapping", action="store_true")
    run.add_argument("--reset", action="append", help="Provider whose context starts fresh")

    recompute = sub.add_parser("recompute", help="Re-run one historical step")
    recompute.add_argument("--session", required=True)
    recompute.add_argument("--turn", required=True)
    recompute.add_argument("--step", required=True, help="prompt (or batch), mapping, understand, ...")
    recompute.add_argument("--provider", required=True)
    recompute.add_argument("--message", help="Override the original user message")

    concierge = sub.add_parser("concierge", help="One concierge turn")
    concierge.add_argument("--message", required=True)
    concierge.add_argument("--session")

    sessions = sub.add_parser("sessions")
    sessions_sub = sessions.add_subparsers(dest="sessions_cmd")
    list_cmd = sessions_sub.add_parser("list")
    list_cmd.add_argument("--limit", type=int, default=20)
    show_cmd = sessions_sub.add_parser("show")
    show_cmd.add_argument("session_id")

    sub.add_parser("serve")
    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        if args.command == "analyze":
            cmd_analyze(args)
        elif args.command == "explore":
            cmd_explore(args)
        elif args.command == "run":
            cmd_run(args)
        elif args.command == "recompute":
            cmd_recompute(args)
        elif args.command == "concierge":
            cmd_concierge(args)
        elif args.command == "sessions":
            cmd_sessions(args)
        elif args.command == "serve":
            cmd_serve(args)
        else:
            parser.print_help()
    except QuorumError as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
