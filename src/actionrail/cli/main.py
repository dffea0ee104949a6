"""CLI entry point for actionrail.

Commands:
    actionrail validate <path>...          check definition files, report every error
    actionrail run <path> <action>...      load definitions and run actions once
    actionrail trigger <path> <type>       load definitions and fire a trigger
    actionrail server                      start the inspection API
    actionrail bundles                     list saved state bundles
    actionrail export <name>               print a saved state bundle as JSON
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

DEFAULT_DB = ".actionrail/actionrail.db"


def cli(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="actionrail",
        description="Declarative action execution with retries, caching and undoable state",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    subparsers = parser.add_subparsers(dest="command")

    # --- validate ---
    validate_parser = subparsers.add_parser("validate", help="Validate definition files")
    validate_parser.add_argument("paths", nargs="+", help="Definition files or directories")

    # --- run ---
    run_parser = subparsers.add_parser("run", help="Run actions once and print the results")
    run_parser.add_argument("definitions", help="Definition file or directory")
    run_parser.add_argument("actions", nargs="+", help="Action ids, run in order")
    run_parser.add_argument("--state", help="JSON file with the initial state document")
    run_parser.add_argument("--db", default=DEFAULT_DB, help="Database path")
    run_parser.add_argument("--parallel", action="store_true", help="Run the actions in parallel")
    run_parser.add_argument("--continue-on-error", action="store_true", help="Keep going after a failure")
    run_parser.add_argument("--save", metavar="NAME", help="Save the final state bundle under NAME")

    # --- trigger ---
    trigger_parser = subparsers.add_parser("trigger", help="Fire a trigger against loaded definitions")
    trigger_parser.add_argument("definitions", help="Definition file or directory")
    trigger_parser.add_argument("type", help="Trigger type, e.g. onLaunch or manual")
    trigger_parser.add_argument("--payload", default="{}", help="JSON payload for the trigger")
    trigger_parser.add_argument("--state", help="JSON file with the initial state document")
    trigger_parser.add_argument("--db", default=DEFAULT_DB, help="Database path")

    # --- server ---
    server_parser = subparsers.add_parser("server", help="Start the inspection API server")
    server_parser.add_argument("--host", default="127.0.0.1")
    server_parser.add_argument("--port", type=int, default=6275)
    server_parser.add_argument("--db", default=DEFAULT_DB)
    server_parser.add_argument("--definitions", help="Definition file or directory to preload")

    # --- bundles ---
    bundles_parser = subparsers.add_parser("bundles", help="List saved state bundles")
    bundles_parser.add_argument("--db", default=DEFAULT_DB)

    # --- export ---
    export_parser = subparsers.add_parser("export", help="Print a saved state bundle")
    export_parser.add_argument("name", nargs="?", default="default", help="Bundle name (default: default)")
    export_parser.add_argument("--db", default=DEFAULT_DB)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    if args.command == "validate":
        _cmd_validate(args)
    elif args.command == "run":
        _cmd_run(args)
    elif args.command == "trigger":
        _cmd_trigger(args)
    elif args.command == "server":
        _cmd_server(args)
    elif args.command == "bundles":
        _cmd_bundles(args)
    elif args.command == "export":
        _cmd_export(args)


def _definition_files(path: Path) -> list[Path]:
    if path.is_dir():
        return sorted(path.glob("*.json"))
    return [path]


def _read_state(path: str | None) -> dict[str, Any] | None:
    if not path:
        return None
    document = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(document, dict):
        print(f"State file {path} must contain a JSON object.")
        sys.exit(2)
    return document


def _print_json(value: Any) -> None:
    from actionrail.core.serialization import to_jsonable

    print(json.dumps(to_jsonable(value), indent=2))


def _cmd_validate(args: argparse.Namespace) -> None:
    """Report every problem in every definition; exit 1 if any were found."""
    from actionrail.core.errors import ValidationError
    from actionrail.core.loader import definition_errors, read_file

    failures = 0
    checked = 0
    for raw in args.paths:
        for file in _definition_files(Path(raw)):
            try:
                items = read_file(file)
            except ValidationError as exc:
                print(f"  [X] {file}: {exc.message}")
                failures += 1
                continue
            for index, item in enumerate(items):
                checked += 1
                label = item.get("id", f"#{index}") if isinstance(item, dict) else f"#{index}"
                errors = definition_errors(item)
                if not errors:
                    print(f"  [+] {file}: {label}")
                    continue
                failures += 1
                print(f"  [X] {file}: {label}")
                for error in errors:
                    print(f"        {error['path']}: {error['message']}")

    print(f"\n{checked} definitions checked, {failures} with errors.")
    if failures:
        sys.exit(1)


def _cmd_run(args: argparse.Namespace) -> None:
    """Load definitions, run the named actions and print their results."""
    import asyncio

    from actionrail.core.config import EngineConfig
    from actionrail.engine import Engine

    async def _run() -> bool:
        config = EngineConfig(db_path=Path(args.db))
        async with Engine(config, initial_state=_read_state(args.state)) as engine:
            engine.load_path(args.definitions)
            if args.parallel:
                results = await engine.parallel(args.actions)
            else:
                results = await engine.sequence(args.actions, continue_on_error=args.continue_on_error)
            _print_json(
                {
                    "results": [r.to_dict() for r in results],
                    "state": engine.state.get_state(),
                }
            )
            if args.save:
                meta = await engine.state.save(args.save)
                print(f"\n  Saved bundle '{args.save}' ({meta['event_count']} events)", file=sys.stderr)
            return all(r.success for r in results)

    if not asyncio.run(_run()):
        sys.exit(1)


def _cmd_trigger(args: argparse.Namespace) -> None:
    """Fire one trigger and print what ran."""
    import asyncio

    from actionrail.core.config import EngineConfig
    from actionrail.core.models import TriggerType
    from actionrail.engine import Engine

    try:
        trigger_type = TriggerType(args.type)
    except ValueError:
        valid = ", ".join(t.value for t in TriggerType)
        print(f"Unknown trigger '{args.type}'. Expected one of: {valid}")
        sys.exit(2)
    payload = json.loads(args.payload)

    async def _trigger() -> None:
        config = EngineConfig(db_path=Path(args.db))
        async with Engine(config, initial_state=_read_state(args.state)) as engine:
            engine.load_path(args.definitions)
            results = await engine.trigger(trigger_type, payload)
            if not results:
                print(f"No enabled actions listen for {trigger_type.value}.")
                return
            _print_json({"results": [r.to_dict() for r in results], "state": engine.state.get_state()})

    asyncio.run(_trigger())


def _cmd_server(args: argparse.Namespace) -> None:
    """Start only the API server."""
    import uvicorn

    from actionrail.core.config import EngineConfig
    from actionrail.engine import Engine
    from actionrail.server.app import create_app

    config = EngineConfig(db_path=Path(args.db), server_host=args.host, server_port=args.port)
    engine = Engine(config)
    if args.definitions:
        loaded = engine.load_path(args.definitions)
        print(f"\n  Loaded {len(loaded)} definitions from {args.definitions}")
    app = create_app(engine, manage_engine=True)

    print(f"\n  actionrail API server at {config.server_url}")
    print(f"  API docs: {config.server_url}/api/docs")
    print(f"  Database: {args.db}\n")

    uvicorn.run(app, host=args.host, port=args.port, log_level="info")


def _cmd_bundles(args: argparse.Namespace) -> None:
    """List bundles saved in the database."""
    import asyncio

    from actionrail.storage.sqlite import SQLiteStore

    db_path = Path(args.db)
    if not db_path.exists():
        print("No saved data found. Run actions with --save first.")
        return

    async def _list() -> None:
        store = SQLiteStore(db_path)
        await store.initialize()
        bundles = await store.list_bundles()
        await store.close()

        if not bundles:
            print("No bundles saved.")
            return

        print(f"\n{'Name':<24} {'Events':<8} {'Saved'}")
        print("-" * 60)
        for bundle in bundles:
            print(f"{bundle['name']:<24} {bundle.get('event_count', '?')!s:<8} {bundle.get('saved_at', '')}")
        print()

    asyncio.run(_list())


def _cmd_export(args: argparse.Namespace) -> None:
    """Print one saved bundle."""
    import asyncio

    from actionrail.storage.sqlite import SQLiteStore

    db_path = Path(args.db)
    if not db_path.exists():
        print("No saved data found.")
        sys.exit(1)

    async def _export() -> dict[str, Any] | None:
        store = SQLiteStore(db_path)
        await store.initialize()
        try:
            return await store.load_bundle(args.name)
        finally:
            await store.close()

    bundle = asyncio.run(_export())
    if bundle is None:
        print(f"Bundle '{args.name}' not found.")
        sys.exit(1)
    _print_json(bundle)


if __name__ == "__main__":
    cli()
