import argparse
import logging
from pathlib import Path
import sys
from typing import List, Optional

from assets import AssetPipeline
from config import DEFAULT_LOCK_FILE, DEFAULT_PROJECT_FILE, Config, load_config
from errors import ConfigError, CorruptLockFile
from exporter import DEFAULT_OUTPUTS, EXPORT_FORMATS, Exporter
from gateway import Gateway
from lockstore import LockStore
from manifest import ProjectConfig, load_project
from publisher import PlacePublisher
from reconciler import Reconciler, RunReport
from roblox_api import RobloxClient, RobloxCookieClient
from telemetry import init_telemetry, shutdown_telemetry, start_span

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rbxsync",
        description="Sync Roblox experience settings, passes, products, badges and places.",
    )
    parser.add_argument(
        "--config", default=DEFAULT_PROJECT_FILE, help="project file (default: rbxsync.yml)"
    )
    parser.add_argument(
        "--lock", default=None, help="lock file (default: rbxsync-lock.yml next to the project file)"
    )
    parser.add_argument("--log-level", default=None, help="logging level (default: INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="create or update resources to match the project file")
    sync.add_argument("--dry-run", action="store_true", help="report actions without applying them")
    sync.add_argument(
        "--prune", action="store_true", help="drop lock entries no longer in the project file"
    )

    publish = sub.add_parser("publish", help="publish place files marked with publish: true")
    publish.add_argument("--dry-run", action="store_true", help="report without publishing")

    export = sub.add_parser("export", help="write the live state of the experience to a file")
    export.add_argument("--output", default=None, help="output path")
    export.add_argument("--format", choices=EXPORT_FORMATS, default="yaml")
    return parser


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )


def lock_path_for(args: argparse.Namespace) -> Path:
    if args.lock:
        return Path(args.lock)
    return Path(args.config).resolve().parent / DEFAULT_LOCK_FILE


def build_gateway(cfg: Config, project: ProjectConfig, *, require_key: bool) -> Gateway:
    api_key = cfg.require_api_key() if require_key else cfg.api_key
    universe_id = cfg.resolve_universe_id(project.universe.id)
    client = RobloxClient(
        api_key,
        cfg.timeout,
        api_base=cfg.api_base,
        retries=cfg.http_retries,
        retry_backoff=cfg.http_retry_backoff,
    )
    cookie_client = RobloxCookieClient(cfg.cookie, cfg.timeout) if cfg.cookie else None
    return Gateway(client, universe_id, cookie_client)


def run_sync(args: argparse.Namespace, cfg: Config) -> RunReport:
    project = load_project(args.config)
    lock_path = lock_path_for(args)
    lock = LockStore.load(lock_path)
    gateway = build_gateway(cfg, project, require_key=not args.dry_run)
    reconciler = Reconciler(
        gateway,
        lock,
        project,
        assets=AssetPipeline(gateway, cfg.poll_interval, cfg.poll_attempts),
        lock_path=lock_path,
        dry_run=args.dry_run,
        verify_remote=cfg.verify_remote,
        on_missing=cfg.on_missing,
    )
    return reconciler.run(prune=args.prune)


def run_publish(args: argparse.Namespace, cfg: Config) -> RunReport:
    project = load_project(args.config)
    gateway = build_gateway(cfg, project, require_key=not args.dry_run)
    return PlacePublisher(gateway, project, dry_run=args.dry_run).run()


def run_export(args: argparse.Namespace, cfg: Config) -> None:
    project = load_project(args.config) if Path(args.config).exists() else None
    universe_id = cfg.resolve_universe_id(project.universe.id if project else None)
    output = Path(args.output or DEFAULT_OUTPUTS[args.format])
    exporter = Exporter(
        cfg.require_api_key(),
        universe_id,
        api_base=cfg.api_base,
        timeout=cfg.timeout,
        retries=cfg.http_retries,
        retry_backoff=cfg.http_retry_backoff,
    )
    exporter.export(output, args.format)


def report_exit_code(report: RunReport) -> int:
    totals = report.totals()
    logging.info(
        "Done%s: %s",
        " (dry run)" if report.dry_run else "",
        ", ".join(f"{count} {name}" for name, count in totals.items() if count),
    )
    if report.ok:
        return EXIT_OK
    for failure in report.failures:
        logging.error("Failed: %s '%s': %s", failure.kind.label, failure.name, failure.detail)
    return EXIT_FAILURES


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        cfg = load_config()
    except ConfigError as exc:
        setup_logging(args.log_level or "INFO")
        logging.error("%s", exc)
        return EXIT_CONFIG
    setup_logging(args.log_level or cfg.log_level)
    init_telemetry()

    try:
        with start_span("rbxsync.command", {"rbxsync.command": args.command}):
            if args.command == "sync":
                return report_exit_code(run_sync(args, cfg))
            if args.command == "publish":
                return report_exit_code(run_publish(args, cfg))
            run_export(args, cfg)
            return EXIT_OK
    except (ConfigError, CorruptLockFile) as exc:
        logging.error("%s", exc)
        return EXIT_CONFIG
    except Exception:
        logging.exception("rbxsync %s failed", args.command)
        return EXIT_FAILURES
    finally:
        shutdown_telemetry()


if __name__ == "__main__":
    sys.exit(main())
