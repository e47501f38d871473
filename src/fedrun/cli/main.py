"""``fedrun`` command line.

Subcommands:
    fedrun validate consortium.json
    fedrun run consortium.json run.json mappings.json
    fedrun mirror tree.json
    fedrun download RUN_ID --token TOKEN --client-id USER
    fedrun history

Common options (--config, --app-dir, --user-id, --api-url, --no-jitter,
-v) go before the subcommand.
"""

import sys
import json
import asyncio
import logging
import argparse
import importlib.util
from pathlib import Path
from typing import Optional

from fedrun.contracts import MappingIncompleteError, RemoteFetchError
from fedrun.logging_setup import install_exception_handlers, setup_logging
from fedrun.mapping import resolve_mappings
from fedrun.models import Consortium, RunStatus
from fedrun.pipeline import (
    RunControlSurface,
    RunEventHub,
    RunObserver,
    RunTracker,
    SessionManager,
)
from fedrun.schemas import CLIConfig, InternalConfig, ParamConfig, UserConfig, resolve_config
from fedrun.setup_directories import setup_app_directories
from fedrun.staging import download_run_assets, mirror_outputs

logger = logging.getLogger(__name__)


def load_user_config_dict(config_path: str) -> dict:
    """Load user config dict from Python file.

    Returns the raw dict before Pydantic validation.

    Raises
    ------
    FileNotFoundError
        If config file does not exist.
    ValueError
        If no CONFIG dict found in file.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")

    spec = importlib.util.spec_from_file_location("config_module", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)

    for name in dir(module):
        if name.startswith('CONFIG'):
            obj = getattr(module, name)
            if isinstance(obj, dict):
                return obj

    raise ValueError(f"No CONFIG dict found in {path}")


def load_json(path: str):
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def build_config(args: argparse.Namespace) -> InternalConfig:
    """Resolve Param < User file < command line into an InternalConfig."""
    user_cfg = UserConfig.model_validate(load_user_config_dict(args.config)) if args.config else None

    cli_args = {
        "app_directory": args.app_dir,
        "user_id": args.user_id,
        "api_server_url": args.api_url,
        "log_level": "DEBUG" if args.verbose else None,
        "no_jitter": args.no_jitter,
    }
    cli_cfg = CLIConfig.model_validate({k: v for k, v in cli_args.items() if v is not None})

    return resolve_config(ParamConfig(), user_cfg, cli_cfg)


class ConsoleObserver(RunObserver):
    """Prints run events for an interactive session."""

    def on_queued(self, run, steps):
        print(f"Run {run.id} queued ({len(steps)} step(s))")

    def on_progress(self, run_id, event):
        if event.get("status") == "complete":
            print(f"  pulled {event['image']}")

    def on_state_update(self, run_id, data):
        logger.debug("Run %s state: %s", run_id, data)

    def on_terminal(self, consortium_name, run):
        outcome = "complete" if run.error is None else f"failed: {run.error.message}"
        print(f"Run {run.id} of {consortium_name} {outcome}")

    def on_warning(self, message):
        print(f"WARNING: {message}", file=sys.stderr)

    def on_main_error(self, error):
        print(f"ERROR: {error.get('message')}", file=sys.stderr)


# =============================================================================
# Subcommands
# =============================================================================

def cmd_validate(args, config: InternalConfig) -> int:
    consortium = Consortium.model_validate(load_json(args.consortium))
    try:
        resolution = resolve_mappings(consortium)
    except MappingIncompleteError as exc:
        print(exc.message)
        return 1

    print(f"{consortium.name}: mapping complete")
    for used in resolution.collections_used:
        print(f"  collection {used['collectionId']} (group {used['groupId']})")
    return 0


async def _run_pipeline(args, config: InternalConfig, dirs: dict) -> int:
    install_exception_handlers(asyncio.get_running_loop())

    with RunTracker(dirs["base"] / "run_history.db") as tracker:
        tracker.fail_interrupted()

        hub = RunEventHub()
        hub.subscribe(ConsoleObserver())
        sessions = SessionManager(config, dirs, hub=hub, tracker=tracker)
        control = RunControlSurface(sessions, config, dirs, tracker=tracker)

        await sessions.login(user_id=config.user_id, token=args.token)
        try:
            run = await control.start_run(
                load_json(args.consortium),
                load_json(args.mappings),
                load_json(args.run),
                network_volume=args.network_volume,
            )
        finally:
            await sessions.logout()

    return 0 if run is not None and run.status == RunStatus.COMPLETE.value else 1


def cmd_run(args, config: InternalConfig) -> int:
    dirs = setup_app_directories(config.app_directory)
    setup_logging(config, dirs)
    return asyncio.run(_run_pipeline(args, config, dirs))


def cmd_mirror(args, config: InternalConfig) -> int:
    if not config.user_id:
        print("mirror needs --user-id (or USER_ID in the config file)", file=sys.stderr)
        return 2
    dirs = setup_app_directories(config.app_directory)
    for path in mirror_outputs(dirs, config.user_id, load_json(args.tree)):
        print(path)
    return 0


def cmd_download(args, config: InternalConfig) -> int:
    api_url = config.api_server_url
    if not api_url:
        print("download needs --api-url (or API_SERVER_URL in the config file)", file=sys.stderr)
        return 2
    dirs = setup_app_directories(config.app_directory)
    try:
        run_dir = download_run_assets(
            args.run_id, args.token, args.client_id, api_url, dirs,
            config.download.timeout_sec, config.download.chunk_size,
        )
    except RemoteFetchError as exc:
        print(exc.message, file=sys.stderr)
        return 1
    print(f"Assets of run {args.run_id} extracted to {run_dir}")
    return 0


def cmd_history(args, config: InternalConfig) -> int:
    dirs = setup_app_directories(config.app_directory)
    with RunTracker(dirs["base"] / "run_history.db") as tracker:
        stats = tracker.get_statistics(consortium_id=args.consortium_id)
        runs = tracker.get_runs(status=args.status, consortium_id=args.consortium_id)

    print(json.dumps(stats, indent=2))
    for row in runs:
        print(f"{row['run_id']}  {row['status']:<18} {row['pipeline_name'] or ''}  {row['error_message'] or ''}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fedrun", description="Consortium pipeline run controller")
    parser.add_argument("--config", help="Path to user config file (Python file with CONFIG dict)")
    parser.add_argument("--app-dir", help="Application directory")
    parser.add_argument("--user-id", help="Local user id")
    parser.add_argument("--api-url", help="API server URL")
    parser.add_argument("--no-jitter", action="store_true", help="Start runs without a random delay")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose (DEBUG) logging")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("validate", help="Check a consortium's variable mapping")
    p.add_argument("consortium", help="Consortium JSON file")
    p.set_defaults(func=cmd_validate)

    p = sub.add_parser("run", help="Run a pipeline to completion")
    p.add_argument("consortium", help="Consortium JSON file")
    p.add_argument("run", help="Run JSON file")
    p.add_argument("mappings", help="Data mappings JSON file")
    p.add_argument("--token", help="Auth token handed to the engine factory")
    p.add_argument("--network-volume", help="Engine network volume")
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("mirror", help="Build the symlink mirror of run outputs")
    p.add_argument("tree", help="JSON list of consortia with their runs")
    p.set_defaults(func=cmd_mirror)

    p = sub.add_parser("download", help="Download a remote run's result bundle")
    p.add_argument("run_id")
    p.add_argument("--token", required=True, help="API bearer token")
    p.add_argument("--client-id", required=True, help="Local user id owning the outputs")
    p.set_defaults(func=cmd_download)

    p = sub.add_parser("history", help="Show run history")
    p.add_argument("--status", choices=[s.value for s in RunStatus])
    p.add_argument("--consortium-id")
    p.set_defaults(func=cmd_history)

    return parser


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    config = build_config(args)
    if args.command != "run":
        logging.basicConfig(level=config.logging.level,
                            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    return args.func(args, config)


if __name__ == "__main__":
    sys.exit(main())
