"""Command line interface for Concord."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

from concord.config import Config, SYNTHESIS_STRATEGIES, load_config
from concord.errors import ConcordError
from concord.orchestrator import Strategy
from concord.pipeline import ConcordPipeline


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2, default=str))


def _context(args: argparse.Namespace) -> dict:
    if not getattr(args, "context", None):
        return {}
    try:
        value = json.loads(args.context)
    except json.JSONDecodeError as exc:
        raise SystemExit(f"--context must be a JSON object: {exc}")
    if not isinstance(value, dict):
        raise SystemExit("--context must be a JSON object")
    return value


def _build_pipeline(args: argparse.Namespace) -> ConcordPipeline:
    config = Config(load_config(Path(args.config) if args.config else None))
    if args.offline:
        return ConcordPipeline.offline(config)
    return ConcordPipeline.from_config(config)


async def _route(args: argparse.Namespace) -> Any:
    async with _build_pipeline(args) as pipeline:
        return pipeline.route(args.text, _context(args)).to_dict()


async def _run(args: argparse.Namespace) -> Any:
    options: dict[str, Any] = {"context": _context(args)}
    if args.strategy:
        options["strategy"] = args.strategy
    if args.targets:
        options["targets"] = [t.strip() for t in args.targets.split(",") if t.strip()]
    synthesis: dict[str, Any] = {}
    if args.synthesis:
        synthesis["strategy"] = args.synthesis
    if args.template:
        synthesis["template"] = args.template
    if args.citations:
        synthesis["include_citations"] = True
    options["synthesis"] = synthesis
    async with _build_pipeline(args) as pipeline:
        result = await pipeline.run(args.text, options)
        return result.to_dict()


async def _workflow(args: argparse.Namespace) -> Any:
    async with _build_pipeline(args) as pipeline:
        result = await pipeline.execute_workflow(args.name, args.text, {"context": _context(args)})
        return result.to_dict()


async def _workflows(args: argparse.Namespace) -> Any:
    pipeline = _build_pipeline(args)
    return [w.to_dict() for w in pipeline.orchestrator.workflows()]


async def _config(args: argparse.Namespace) -> Any:
    config = Config(load_config(Path(args.config) if args.config else None))
    return {
        "router": asdict(config.router),
        "orchestrator": asdict(config.orchestrator),
        "deliberation": asdict(config.deliberation),
        "synthesis": asdict(config.synthesis),
        "subsystems": asdict(config.subsystems),
        "audit_path": str(config.audit_path) if config.audit_path else None,
    }


COMMANDS = {
    "route": _route,
    "run": _run,
    "workflow": _workflow,
    "workflows": _workflows,
    "config": _config,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="concord")
    parser.add_argument("--config", help="YAML config file merged over the defaults")
    parser.add_argument("--offline", action="store_true", help="Use deterministic in-process subsystems")
    parser.add_argument("--log-level", default="WARNING")
    sub = parser.add_subparsers(dest="command")

    route = sub.add_parser("route", help="Show the routing decision for a request")
    route.add_argument("text")
    route.add_argument("--context", help="JSON object of routing context")

    run = sub.add_parser("run", help="Route, execute and synthesize a request")
    run.add_argument("text")
    run.add_argument("--strategy", choices=[s.value for s in Strategy])
    run.add_argument("--targets", help="Comma-separated subsystem names")
    run.add_argument("--synthesis", choices=list(SYNTHESIS_STRATEGIES))
    run.add_argument("--template", choices=["comprehensive", "concise", "analytical"])
    run.add_argument("--citations", action="store_true")
    run.add_argument("--context", help="JSON object of request context")

    workflow = sub.add_parser("workflow", help="Run a named workflow")
    workflow.add_argument("name")
    workflow.add_argument("text")
    workflow.add_argument("--context", help="JSON object of request context")

    sub.add_parser("workflows", help="List workflows")
    sub.add_parser("config", help="Print the effective configuration")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    try:
        _print(asyncio.run(handler(args)))
    except ConcordError as exc:
        _print({"error": type(exc).__name__, "detail": str(exc)})
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
