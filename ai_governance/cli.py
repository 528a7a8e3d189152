"""
CLI Entry Point — operate the governance engine from a terminal
===============================================================
Usage:
    python -m ai_governance dispatch --key $AI_GOV_KEY '{"action": "get_summary"}'
    python -m ai_governance refresh                 # refresh every tenant's summary
    python -m ai_governance sweep                   # purge expired penalties
    python -m ai_governance route --tenant t-acme --feature question_generation \
                                  --scope default --prompt "..."

All subcommands accept --config PATH (YAML, see config.py) and --verbose.
"""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import Optional

from .config import load_config
from .engine import GovernanceEngine
from .errors import GovernanceError
from .models import CompletionRequest, RoutingMode

logger = logging.getLogger("ai_governance.cli")


def setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
        force=True,  # re-apply even if already configured
    )


def _build_engine(args) -> GovernanceEngine:
    config = load_config(args.config)
    if args.tracing:
        config.tracing = dataclasses.replace(
            config.tracing, enabled=True,
            otlp_endpoint=args.otlp_endpoint or config.tracing.otlp_endpoint,
        )
    return GovernanceEngine(config)


async def _cmd_dispatch(args) -> int:
    async with _build_engine(args) as engine:
        reply = await engine.governance.handle(f"Bearer {args.key}", args.body)
    print(json.dumps(reply, indent=2, sort_keys=True, default=str))
    return 0 if "data" in reply else 1


async def _cmd_refresh(args) -> int:
    async with _build_engine(args) as engine:
        if args.tenant:
            rows = await engine.aggregator.refresh_summary(args.tenant)
            print(f"{args.tenant}: {len(rows)} rows")
        else:
            for tenant_id, count in (await engine.aggregator.refresh_all()).items():
                print(f"{tenant_id}: {count} rows")
    return 0


async def _cmd_sweep(args) -> int:
    async with _build_engine(args) as engine:
        removed = await engine.sweep()
    print(f"Removed {removed} expired penalties")
    return 0


async def _cmd_route(args) -> int:
    schema = None
    if args.schema:
        with open(args.schema, "r", encoding="utf-8") as fh:
            schema = json.load(fh)
    request = CompletionRequest(
        prompt=args.prompt,
        system=args.system,
        max_tokens=args.max_tokens,
        response_schema=schema,
    )
    async with _build_engine(args) as engine:
        try:
            result = await engine.route(
                args.tenant, args.feature, args.scope, request,
                routing_mode_override=args.mode, user_id=args.user,
            )
        except GovernanceError as e:
            print(f"ERROR ({e.status}): {e}", file=sys.stderr)
            return 1
    print(f"[{result.provider.value}/{result.model}] attempts={result.attempts} "
          f"fallback={result.used_fallback} mode={result.effective_mode.value} "
          f"cost=${result.cost:.6f} latency={result.latency_ms:.0f}ms")
    print(result.text)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ai_governance",
        description="AI provider routing & governance engine",
    )
    parser.add_argument("--config", type=str, default=None, metavar="PATH",
                        help="YAML config file (default: $AI_GOV_CONFIG)")
    parser.add_argument("--verbose", "-v", action="store_true")
    parser.add_argument("--tracing", action="store_true", default=False,
                        help="Enable OpenTelemetry tracing (service name and environment from the config)")
    parser.add_argument("--otlp-endpoint", type=str, default=None, metavar="URL",
                        help="OTLP gRPC endpoint (needs the tracing extra); spans print to console when omitted")

    subparsers = parser.add_subparsers(dest="subcommand", metavar="SUBCOMMAND", required=True)

    dp = subparsers.add_parser("dispatch", help="Run one governance action")
    dp.add_argument("--key", required=True, help="API key of the caller")
    dp.add_argument("body", help='JSON body, e.g. \'{"action": "get_summary"}\'')
    dp.set_defaults(func=_cmd_dispatch)

    rp = subparsers.add_parser("refresh", help="Refresh governance summaries")
    rp.add_argument("--tenant", type=str, default=None, help="Only this tenant")
    rp.set_defaults(func=_cmd_refresh)

    sp = subparsers.add_parser("sweep", help="Purge expired penalties")
    sp.set_defaults(func=_cmd_sweep)

    rt = subparsers.add_parser("route", help="Route a single completion request")
    rt.add_argument("--tenant", required=True)
    rt.add_argument("--feature", required=True)
    rt.add_argument("--scope", default="default")
    rt.add_argument("--prompt", required=True)
    rt.add_argument("--system", default="")
    rt.add_argument("--max-tokens", type=int, default=1500)
    rt.add_argument("--schema", type=str, default=None, metavar="PATH",
                    help="JSON schema file the response must satisfy")
    rt.add_argument("--mode", choices=[m.value for m in RoutingMode], default=None,
                    help="Routing mode override for this call")
    rt.add_argument("--user", type=str, default=None)
    rt.set_defaults(func=_cmd_route)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    try:
        return asyncio.run(args.func(args))
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
