from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from .apply import ApplyOptions, ApplyResult, apply_fleet
from .cleanup import ORPHAN_KINDS, CleanupResult, cleanup_orphans
from .client import LettaClient, LettaClientConfig, LettaClientError, create_letta_client
from .errors import ApplyFailedError, FleetConfigError, PreconditionError
from .executor import DryRunExecutor, Executor, LiveExecutor
from .fleet import parse_fleet_file
from .validators import DEFAULT_CANARY_PREFIX, validate_embeddings


EXIT_OK = 0
EXIT_AGENTS_FAILED = 1
EXIT_CONFIG = 2
EXIT_CLIENT = 3


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="lettafleet",
        description="Declarative fleet management for Letta agents",
    )
    verbosity = p.add_mutually_exclusive_group(required=False)
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Show per-operation detail")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only show warnings and errors")
    p.add_argument("--offline", action="store_true", help="Use an in-process server (no network)")

    sub = p.add_subparsers(dest="cmd", required=True)

    ap = sub.add_parser("apply", help="Reconcile remote agents with a fleet document")
    ap.add_argument("-f", "--file", type=Path, required=True, help="Fleet document (YAML)")
    ap.add_argument("--root", type=Path, default=None, help="Base directory for relative file references")
    ap.add_argument("--agent", dest="agent_filter", default=None, help="Only agents whose name contains this")
    ap.add_argument("--dry-run", action="store_true", help="Show what would change without changing it")
    ap.add_argument("--force", action="store_true", help="Also remove tools/blocks/folders/archives not declared")
    ap.add_argument("--canary", action="store_true", help="Deploy prefixed canary copies of the agents")
    ap.add_argument("--canary-prefix", default=DEFAULT_CANARY_PREFIX, help="Name prefix for canary agents")
    ap.add_argument("--promote", action="store_true", help="Apply to production names (requires --canary)")
    ap.add_argument("--cleanup", action="store_true", help="Delete canary agents (requires --canary)")
    ap.add_argument("--match", default=None, help="Apply one agent definition to existing agents matching a glob")
    ap.add_argument("--skip-first-message", action="store_true", help="Do not send first_message to new agents")
    ap.add_argument("--json", dest="json_output", action="store_true", help="Print the outcome as JSON")

    val = sub.add_parser("validate", help="Validate a fleet document without contacting the server")
    val.add_argument("-f", "--file", type=Path, required=True, help="Fleet document (YAML)")
    val.add_argument("--root", type=Path, default=None, help="Base directory for relative file references")

    cl = sub.add_parser("cleanup", help="Delete resources no agent attaches")
    cl.add_argument("kind", choices=[*ORPHAN_KINDS, "all"], help="Resource kind")
    cl.add_argument("--force", action="store_true", help="Actually delete (default is a dry run)")

    return p


def _configure_logging(args: argparse.Namespace) -> None:
    level = logging.INFO
    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.WARNING
    logging.basicConfig(level=level, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")
    # request lines are only interesting with --verbose
    logging.getLogger("httpx").setLevel(logging.DEBUG if args.verbose else logging.WARNING)


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args)

    try:
        return _run(args)
    except ApplyFailedError as e:
        print(f"error: {e}")
        return EXIT_AGENTS_FAILED
    except (FleetConfigError, PreconditionError) as e:
        print(f"error: {e}")
        return EXIT_CONFIG
    except LettaClientError as e:
        print(f"error: {e}")
        return EXIT_CLIENT


def _run(args: argparse.Namespace) -> int:
    if args.cmd == "validate":
        fleet = parse_fleet_file(args.file, args.root)
        validate_embeddings(args.file, fleet.agents, LettaClientConfig.from_settings_file().base_url)
        print(
            f"{args.file}: valid ({len(fleet.agents)} agents, {len(fleet.shared_blocks)} shared blocks, "
            f"{len(fleet.shared_folders)} shared folders, {len(fleet.mcp_servers)} mcp servers)"
        )
        return EXIT_OK

    client = create_letta_client(offline=args.offline)

    if args.cmd == "apply":
        options = ApplyOptions(
            file=args.file,
            root=args.root,
            agent_filter=args.agent_filter,
            dry_run=args.dry_run,
            force=args.force,
            canary=args.canary,
            canary_prefix=args.canary_prefix,
            promote=args.promote,
            cleanup=args.cleanup,
            match=args.match,
            skip_first_message=args.skip_first_message,
        )
        result = asyncio.run(_with_client(client, apply_fleet(client, options)))
        if args.json_output:
            print(json.dumps(_result_json(result), indent=2, sort_keys=True))
        else:
            from .display import format_apply_summary, format_dry_run

            print(format_dry_run(result) if result.dry_run else format_apply_summary(result))
            result.raise_for_failures()
        return EXIT_OK if result.ok else EXIT_AGENTS_FAILED

    if args.cmd == "cleanup":
        from .display import format_cleanup

        executor: Executor = LiveExecutor(client) if args.force else DryRunExecutor()
        kinds = list(ORPHAN_KINDS) if args.kind == "all" else [args.kind]
        results = asyncio.run(_with_client(client, _cleanup(client, executor, kinds)))
        for kind, res in zip(kinds, results):
            print(format_cleanup(res, f"orphaned {kind}", force_hint=True))
        return EXIT_OK if all(r.ok for r in results) else EXIT_AGENTS_FAILED

    raise ValueError(f"unknown command: {args.cmd}")


async def _with_client(client: LettaClient, coro):
    try:
        return await coro
    finally:
        await client.aclose()


async def _cleanup(client: LettaClient, executor: Executor, kinds: list[str]) -> list[CleanupResult]:
    return [await cleanup_orphans(client, executor, kind) for kind in kinds]


def _result_json(result: ApplyResult) -> dict:
    out = {
        "agents": dict(result.agents),
        "created": list(result.created),
        "updated": list(result.updated),
        "unchanged": list(result.unchanged),
        "failed": [{"name": f.name, "error": f.error} for f in result.failed],
        "dry_run": result.dry_run,
    }
    if result.canary_cleanup is not None:
        out["canary_cleanup"] = {
            "deleted": list(result.canary_cleanup.deleted),
            "failed": [{"name": f.name, "error": f.error} for f in result.canary_cleanup.failed],
        }
    return out


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
