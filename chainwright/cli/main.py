"""chainwright CLI — inspect and drive a deployment.

Usage:
    chainwright aliases                       Print stored aliases
    chainwright proxies                       Print stored proxy mappings
    chainwright roots                         Print the crawl root set
    chainwright generate-migration <name>     Write a new migration skeleton
    chainwright migrations --path <dir>       List migrations in lexical order
    chainwright spider --runtime mod:attr     Crawl from roots and store the result
    chainwright migrate <name> --path <dir> --runtime mod:attr
    chainwright config                        Show current configuration

Examples:
    chainwright --network mainnet --deployment usdc aliases
    chainwright --deployment usdc generate-migration add_wbtc_collateral
    chainwright --deployment usdc migrate 1660000000_add_wbtc --prepare-only \\
        --path deployments/mainnet/usdc/migrations --runtime my_node:runtime
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import inspect
import json
import sys
from typing import Any

from chainwright.core.config import DeploymentManagerConfig, get_settings
from chainwright.core.errors import ChainwrightError, StructuralError
from chainwright.core.logging import setup_logging
from chainwright.core.types import Namespace
from chainwright.deployment.importer import BlockExplorerImporter
from chainwright.deployment.manager import DeploymentManager
from chainwright.deployment.migration import (
    MigrationRegistry,
    MigrationRunner,
    generate_migration,
)
from chainwright.deployment.registry import Registry
from chainwright.deployment.store import Store

__version__ = "0.1.0"

# ── Coloured output helpers ──────────────────────────────────────────────────

_RESET = "\033[0m"
_BOLD = "\033[1m"
_RED = "\033[91m"
_GREEN = "\033[92m"
_DIM = "\033[2m"


def _c(text: str, code: str) -> str:
    return f"{code}{text}{_RESET}"


# ── CLI argument parser ──────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chainwright",
        description="chainwright — deployment, migration and scenario control plane",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--quiet", "-q", action="store_true", help="Minimal output")
    parser.add_argument("--network", "-n", default="mainnet", help="Network name (default: mainnet)")
    parser.add_argument("--deployment", "-d", default="", help="Deployment name within the network")
    parser.add_argument("--base-dir", help="Deployments directory (default: from settings)")
    parser.add_argument("--offline", action="store_true", help="Never query block explorers")

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("aliases", help="Print stored aliases")
    sub.add_parser("proxies", help="Print stored proxy mappings")
    sub.add_parser("roots", help="Print the crawl root set")

    gen_p = sub.add_parser("generate-migration", help="Write a new migration skeleton")
    gen_p.add_argument("name", help="Migration name, e.g. add_wbtc_collateral")
    gen_p.add_argument("--timestamp", type=int, help="Override the timestamp prefix")

    list_p = sub.add_parser("migrations", help="List migrations in lexical order")
    list_p.add_argument("--path", required=True, help="Directory holding migration modules")

    spider_p = sub.add_parser("spider", help="Crawl from roots and store aliases/proxies")
    spider_p.add_argument("--runtime", required=True, help="Runtime factory as module:attribute")

    migrate_p = sub.add_parser("migrate", help="Prepare and/or enact one migration")
    migrate_p.add_argument("name", help="Migration name")
    migrate_p.add_argument("--path", required=True, help="Directory holding migration modules")
    migrate_p.add_argument("--runtime", required=True, help="Runtime factory as module:attribute")
    mode = migrate_p.add_mutually_exclusive_group()
    mode.add_argument("--prepare-only", action="store_true", help="Only prepare and store the artifact")
    mode.add_argument("--enact-only", action="store_true", help="Enact from the stored artifact")
    migrate_p.add_argument("--no-verify", action="store_true", help="Skip the verify step")

    sub.add_parser("config", help="Show current configuration")

    return parser


# ── Helpers ──────────────────────────────────────────────────────────────────


def _base_dir(args: argparse.Namespace) -> str:
    return args.base_dir or get_settings().deployments_dir


def _store(args: argparse.Namespace, write: bool = False) -> Store:
    return Store(base_dir=_base_dir(args), write_to_disk=write)


def _print_map(title: str, data: dict[str, str], quiet: bool) -> None:
    if quiet:
        print(json.dumps(data, indent=2, sort_keys=True))
        return
    print(f"\n{_BOLD}{title}{_RESET} ({len(data)})")
    for key in sorted(data):
        print(f"  {key:<32} {_c(data[key], _DIM)}")
    print()


async def _load_runtime(target: str) -> Any:
    """Resolve ``module:attribute``; call it (awaiting if needed) when callable."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise StructuralError(f"Runtime must be given as module:attribute, got '{target}'")
    obj = getattr(importlib.import_module(module_name), attr)
    if callable(obj):
        obj = obj()
    if inspect.isawaitable(obj):
        obj = await obj
    return obj


async def _manager(args: argparse.Namespace) -> DeploymentManager:
    runtime = await _load_runtime(args.runtime)
    return DeploymentManager(
        args.network,
        args.deployment,
        runtime,
        importer=None if args.offline else BlockExplorerImporter(),
        config=DeploymentManagerConfig(base_dir=_base_dir(args), write_cache_to_disk=True),
        store=_store(args, write=True),
    )


async def _close(dm: DeploymentManager) -> None:
    if isinstance(dm.importer, BlockExplorerImporter):
        await dm.importer.close()


# ── Commands ─────────────────────────────────────────────────────────────────


async def _run_show(args: argparse.Namespace) -> int:
    ns = Namespace(network=args.network, deployment=args.deployment)
    registry = Registry(_store(args).scoped(ns))
    if args.command == "aliases":
        _print_map("Aliases", await registry.get_aliases(), args.quiet)
    elif args.command == "proxies":
        _print_map("Proxies", await registry.get_proxies(), args.quiet)
    else:
        _print_map("Roots", await registry.get_roots(), args.quiet)
    return 0


async def _run_generate(args: argparse.Namespace) -> int:
    ns = Namespace(network=args.network, deployment=args.deployment)
    scoped = _store(args, write=True).scoped(ns)
    key = await generate_migration(scoped, args.name, args.timestamp)
    print(scoped.file_path(key))
    return 0


def _run_list(args: argparse.Namespace) -> int:
    registry = MigrationRegistry()
    units = registry.load_directory(args.path, args.network, args.deployment)
    for unit in sorted(units, key=lambda m: m.name):
        print(unit.name)
    return 0


async def _run_spider(args: argparse.Namespace) -> int:
    dm = await _manager(args)
    try:
        result = await dm.spider()
    finally:
        await _close(dm)
    _print_map("Aliases", result.aliases, args.quiet)
    if result.proxies:
        _print_map("Proxies", result.proxies, args.quiet)
    return 0


async def _run_migrate(args: argparse.Namespace) -> int:
    registry = MigrationRegistry()
    registry.load_directory(args.path, args.network, args.deployment)
    units = {m.name: m for m in registry.discover(args.network, args.deployment)}
    unit = units.get(args.name)
    if unit is None:
        print(_c(f"Error: no migration named {args.name}", _RED), file=sys.stderr)
        return 1

    dm = await _manager(args)
    runner = MigrationRunner(dm)
    try:
        if args.prepare_only:
            await runner.prepare(unit)
            print(_c(f"Prepared {unit.name}", _GREEN))
            return 0
        if args.enact_only:
            outcome = await runner.enact_stored(unit, verify=not args.no_verify)
        else:
            outcome = await runner.run(unit, verify=not args.no_verify)
    finally:
        await _close(dm)
    states = " → ".join(s.value for s in outcome.transitions)
    print(_c(f"{unit.name}: {states}", _GREEN))
    return 0


def _run_config() -> int:
    settings = get_settings()
    print(f"\n{_BOLD}chainwright configuration{_RESET}\n")
    for field_name in sorted(type(settings).model_fields):
        val = getattr(settings, field_name)
        if any(kw in field_name for kw in ("secret", "key", "token")):
            val = "****" if val else "(not set)"
        print(f"  {_DIM}{field_name}:{_RESET}  {val}")
    print()
    return 0


# ── Entrypoint ───────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"chainwright {__version__}")
        return 0

    if not args.command:
        parser.print_help()
        return 0

    settings = get_settings()
    setup_logging(settings.app_env, "WARNING" if args.quiet else settings.log_level)

    try:
        if args.command == "config":
            return _run_config()
        if args.command in ("aliases", "proxies", "roots"):
            return asyncio.run(_run_show(args))
        if args.command == "generate-migration":
            return asyncio.run(_run_generate(args))
        if args.command == "migrations":
            return _run_list(args)
        if args.command == "spider":
            return asyncio.run(_run_spider(args))
        if args.command == "migrate":
            return asyncio.run(_run_migrate(args))
    except ChainwrightError as exc:
        print(_c(f"Error [{exc.code.value}]: {exc.message}", _RED), file=sys.stderr)
        return 1

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
