"""Command-line entry point.

Every command prints exactly one JSON object on stdout. Failures print the
structured error (`{ok:false, code, message, ...}`) and exit with status 1.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Callable

from . import __version__
from .browser_ops import CdpPipelineOps
from .config import DEFAULT_SESSION_TIMEOUT_MS, DEFAULT_TARGET_TIMEOUT_MS, SurfwrightConfig
from .errors import SurfwrightError, query_invalid
from .maintenance import session_clear, session_prune, state_reconcile, target_prune
from .plan import doctor_report, execute_plan, lint_plan, load_plan, raise_on_lint_errors
from .plan.ndjson_log import LOG_MODES
from .session.resolver import SessionResolver
from .state import StateStore

logger = logging.getLogger("surfwright.cli")


def _positive_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {raw!r}") from exc
    if value <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {raw!r}")
    return value


class _Parser(argparse.ArgumentParser):
    """argparse that reports usage mistakes as E_QUERY_INVALID instead of exiting 2."""

    def error(self, message: str):
        raise query_invalid(message)


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog="surfwright", description="Deterministic browser automation over CDP")
    parser.add_argument("--version", action="version", version=f"surfwright {__version__}")
    commands = parser.add_subparsers(dest="command", required=True, parser_class=_Parser)

    run = commands.add_parser("run", help="execute a step plan")
    run.add_argument("--plan", help="plan file path, or - for stdin")
    run.add_argument("--plan-json", help="inline plan JSON")
    run.add_argument("--replay", help="run artifact to replay")
    run.add_argument("--doctor", action="store_true", help="lint only; do not touch the browser")
    run.add_argument("--record", action="store_true", help="write a replayable run artifact")
    run.add_argument("--record-path")
    run.add_argument("--record-label")
    run.add_argument("--log-ndjson", help="append timeline events to this NDJSON file")
    run.add_argument("--log-mode", choices=LOG_MODES)
    run.add_argument("--timeout-ms", type=_positive_int, default=DEFAULT_TARGET_TIMEOUT_MS)
    run.add_argument("--session", help="session id; defaults to the active session")
    run.set_defaults(handler=cmd_run)

    session = commands.add_parser("session", help="manage browser sessions")
    session_commands = session.add_subparsers(dest="action", required=True, parser_class=_Parser)

    new = session_commands.add_parser("new", help="launch a managed browser")
    new.add_argument("--session-id")
    new.add_argument("--policy", choices=("ephemeral", "persistent"))
    new.add_argument("--lease-ttl-ms", type=_positive_int)
    new.set_defaults(handler=cmd_session_new)

    attach = session_commands.add_parser("attach", help="attach to a running CDP endpoint")
    attach.add_argument("--cdp", required=True, help="CDP origin (http(s):// or ws(s)://)")
    attach.add_argument("--session-id")
    attach.add_argument("--policy", choices=("ephemeral", "persistent"))
    attach.add_argument("--lease-ttl-ms", type=_positive_int)
    attach.set_defaults(handler=cmd_session_attach)

    use = session_commands.add_parser("use", help="make a session active")
    use.add_argument("session_id")
    use.set_defaults(handler=cmd_session_use)

    session_commands.add_parser("ensure", help="ensure an active reachable session").set_defaults(
        handler=cmd_session_ensure
    )
    session_commands.add_parser("list", help="list known sessions").set_defaults(handler=cmd_session_list)

    prune = session_commands.add_parser("prune", help="drop unreachable or expired sessions")
    prune.add_argument("--drop-managed-unreachable", action="store_true")
    prune.add_argument("--keep-attached-unreachable", action="store_true")
    prune.set_defaults(handler=cmd_session_prune)

    clear = session_commands.add_parser("clear", help="forget every session and target")
    clear.add_argument("--keep-processes", action="store_true")
    clear.set_defaults(handler=cmd_session_clear)

    for sub in session_commands.choices.values():
        sub.add_argument("--timeout-ms", type=_positive_int, default=DEFAULT_SESSION_TIMEOUT_MS)

    target = commands.add_parser("target", help="target metadata maintenance")
    target_commands = target.add_subparsers(dest="action", required=True, parser_class=_Parser)
    target_prune_cmd = target_commands.add_parser("prune", help="drop old or excess target records")
    target_prune_cmd.add_argument("--max-age-hours", type=_positive_int)
    target_prune_cmd.add_argument("--max-per-session", type=_positive_int)
    target_prune_cmd.set_defaults(handler=cmd_target_prune)

    state = commands.add_parser("state", help="state store maintenance")
    state_commands = state.add_subparsers(dest="action", required=True, parser_class=_Parser)
    reconcile = state_commands.add_parser("reconcile", help="prune sessions and targets in one pass")
    reconcile.add_argument("--timeout-ms", type=_positive_int, default=DEFAULT_SESSION_TIMEOUT_MS)
    reconcile.add_argument("--max-age-hours", type=_positive_int)
    reconcile.add_argument("--max-per-session", type=_positive_int)
    reconcile.add_argument("--drop-managed-unreachable", action="store_true")
    reconcile.add_argument("--keep-attached-unreachable", action="store_true")
    reconcile.set_defaults(handler=cmd_state_reconcile)
    return parser


# run


def cmd_run(args: argparse.Namespace, config: SurfwrightConfig) -> tuple[dict[str, Any], int]:
    stdin_text = sys.stdin.read() if args.plan == "-" else None
    loaded = load_plan(plan_path=args.plan, plan_json=args.plan_json, replay_path=args.replay, stdin_text=stdin_text)
    issues = lint_plan(loaded.plan)
    if args.doctor:
        report = doctor_report(loaded, issues)
        return report, 0 if report["valid"] else 1
    raise_on_lint_errors(issues)

    store = StateStore(config.state)
    resolver = SessionResolver(store, config)
    session = resolver.resolve(session_id=args.session, timeout_ms=DEFAULT_SESSION_TIMEOUT_MS)
    ops = CdpPipelineOps(store, resolver)
    report = asyncio.run(
        execute_plan(
            loaded,
            ops=ops,
            timeout_ms=args.timeout_ms,
            session_id=session["sessionId"],
            issues=issues,
            log_ndjson=args.log_ndjson,
            log_mode=args.log_mode,
            record=args.record,
            record_path=args.record_path,
            record_label=args.record_label,
            handle=config.state,
        )
    )
    return report, 0


# session


def _resolver(config: SurfwrightConfig) -> SessionResolver:
    return SessionResolver(StateStore(config.state), config)


def cmd_session_new(args: argparse.Namespace, config: SurfwrightConfig) -> tuple[dict[str, Any], int]:
    report = _resolver(config).new(
        timeout_ms=args.timeout_ms, session_id=args.session_id, policy=args.policy, lease_ttl_ms=args.lease_ttl_ms
    )
    return report, 0


def cmd_session_attach(args: argparse.Namespace, config: SurfwrightConfig) -> tuple[dict[str, Any], int]:
    report = _resolver(config).attach(
        cdp_origin=args.cdp,
        timeout_ms=args.timeout_ms,
        session_id=args.session_id,
        policy=args.policy,
        lease_ttl_ms=args.lease_ttl_ms,
    )
    return report, 0


def cmd_session_use(args: argparse.Namespace, config: SurfwrightConfig) -> tuple[dict[str, Any], int]:
    return _resolver(config).use(session_id=args.session_id, timeout_ms=args.timeout_ms), 0


def cmd_session_ensure(args: argparse.Namespace, config: SurfwrightConfig) -> tuple[dict[str, Any], int]:
    return _resolver(config).ensure(timeout_ms=args.timeout_ms), 0


def cmd_session_list(args: argparse.Namespace, config: SurfwrightConfig) -> tuple[dict[str, Any], int]:
    return _resolver(config).list(), 0


def cmd_session_prune(args: argparse.Namespace, config: SurfwrightConfig) -> tuple[dict[str, Any], int]:
    store = StateStore(config.state)
    report = session_prune(
        store,
        timeout_ms=args.timeout_ms,
        drop_managed_unreachable=args.drop_managed_unreachable,
        keep_attached_unreachable=args.keep_attached_unreachable,
    )
    return report, 0


def cmd_session_clear(args: argparse.Namespace, config: SurfwrightConfig) -> tuple[dict[str, Any], int]:
    store = StateStore(config.state)
    return session_clear(store, timeout_ms=args.timeout_ms, keep_processes=args.keep_processes), 0


# maintenance


def cmd_target_prune(args: argparse.Namespace, config: SurfwrightConfig) -> tuple[dict[str, Any], int]:
    store = StateStore(config.state)
    return target_prune(store, max_age_hours=args.max_age_hours, max_per_session=args.max_per_session), 0


def cmd_state_reconcile(args: argparse.Namespace, config: SurfwrightConfig) -> tuple[dict[str, Any], int]:
    report = state_reconcile(
        StateStore(config.state),
        timeout_ms=args.timeout_ms,
        max_age_hours=args.max_age_hours,
        max_per_session=args.max_per_session,
        drop_managed_unreachable=args.drop_managed_unreachable,
        keep_attached_unreachable=args.keep_attached_unreachable,
    )
    return report, 0


def _emit(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
    sys.stdout.flush()


def main(argv: list[str] | None = None, *, config_factory: Callable[[], SurfwrightConfig] | None = None) -> int:
    config = (config_factory or SurfwrightConfig.from_env)()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    try:
        args = build_parser().parse_args(argv)
        payload, code = args.handler(args, config)
    except SurfwrightError as exc:
        logger.info("command failed: %s", exc)
        payload, code = exc.to_dict(), 1
    except Exception as exc:
        logger.exception("unexpected failure")
        payload, code = SurfwrightError("E_INTERNAL", f"{type(exc).__name__}: {exc}").to_dict(), 1
    _emit(payload)
    return code


if __name__ == "__main__":
    sys.exit(main())
