from __future__ import annotations

import argparse
from typing import Any, Callable, cast

import yaml

from ai_task_router.config import load_routing_config
from ai_task_router.enums import Priority, ProviderId, TaskType
from ai_task_router.preferences import RouterPreferences
from ai_task_router.router_engine import RouteOptions, RoutePolicyEngine


def _dump(payload: dict[str, Any]) -> None:
    print(yaml.safe_dump(payload, sort_keys=False).rstrip())


def _add_config_path_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--path",
        default=None,
        help="Routing config YAML. Built-in defaults are used when omitted.",
    )


def cmd_explain_route(args: argparse.Namespace) -> int:
    config = load_routing_config(args.path)
    engine = RoutePolicyEngine(config, rules_timezone=args.timezone)
    preferences = RouterPreferences(
        preferred_providers=[ProviderId(item) for item in args.prefer],
        blocked_providers={ProviderId(item) for item in args.block},
    )
    options = RouteOptions(
        priority=Priority(args.priority) if args.priority else None,
        max_cost=args.max_cost,
        max_latency_ms=args.max_latency_ms,
        requires_auth=args.requires_auth,
    )
    decision = engine.decide(TaskType(args.task), options, preferences=preferences)
    payload = decision.as_dict()
    if not args.debug:
        payload.pop("decision_trace", None)
    _dump(payload)
    return 0


def cmd_show_config(args: argparse.Namespace) -> int:
    config = load_routing_config(args.path)
    _dump(config.model_dump(mode="json", exclude_none=True))
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    from ai_task_router.main import run

    run(host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ai-task-router",
        description="Inspect routing decisions and run the ai-task-router service.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    explain_cmd = subparsers.add_parser(
        "explain-route",
        help="Show the provider, model and fallbacks chosen for a task.",
    )
    _add_config_path_argument(explain_cmd)
    explain_cmd.add_argument(
        "--task", required=True, choices=[item.value for item in TaskType]
    )
    explain_cmd.add_argument(
        "--priority", default=None, choices=[item.value for item in Priority]
    )
    explain_cmd.add_argument("--max-cost", type=float, default=None)
    explain_cmd.add_argument("--max-latency-ms", type=float, default=None)
    explain_cmd.add_argument("--requires-auth", action="store_true")
    explain_cmd.add_argument(
        "--block",
        action="append",
        default=[],
        choices=[item.value for item in ProviderId],
    )
    explain_cmd.add_argument(
        "--prefer",
        action="append",
        default=[],
        choices=[item.value for item in ProviderId],
    )
    explain_cmd.add_argument("--timezone", default="UTC")
    explain_cmd.add_argument("--debug", action="store_true")
    explain_cmd.set_defaults(handler=cmd_explain_route)

    show_cmd = subparsers.add_parser(
        "show-config", help="Print the effective routing table."
    )
    _add_config_path_argument(show_cmd)
    show_cmd.set_defaults(handler=cmd_show_config)

    serve_cmd = subparsers.add_parser("serve", help="Run the HTTP service.")
    serve_cmd.add_argument("--host", default="0.0.0.0")
    serve_cmd.add_argument("--port", type=int, default=8000)
    serve_cmd.set_defaults(handler=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = cast(Callable[[argparse.Namespace], int], args.handler)

    try:
        return handler(args)
    except Exception as exc:  # pragma: no cover - covered via CLI tests
        parser.exit(2, f"error: {exc}\n")


if __name__ == "__main__":
    raise SystemExit(main())
