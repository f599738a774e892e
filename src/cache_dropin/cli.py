import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Callable, Dict, Optional

from cache_dropin.app_container import DropinContainer, build_container
from cache_dropin.config import DEFAULT_CONFIG_DIR, get_env_path, load_config
from cache_dropin.domain.dropin import FileOpResult
from cache_dropin.dropin.header import defines_cache_api, load_record
from cache_dropin.services.error_codes import get_catalog_entry
from cache_dropin.util import obscure_url_secrets


def _configure_logging(level: str) -> None:
    level = (level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _print_result(label: str, result: Optional[FileOpResult]) -> int:
    if result is None:
        print(f"{label}: skipped")
        return 0
    if result.success:
        print(f"{label}: ok")
        return 0
    entry = get_catalog_entry(result.error_kind)
    print(f"{label}: failed ({entry.title}: {entry.user_message})", file=sys.stderr)
    for action in entry.actions:
        print(f"  - {action.label}: {action.description}", file=sys.stderr)
    return 1


def _mutate(container: DropinContainer, label: str, run: Callable) -> int:
    with container.new_probe() as probe:
        if not probe.initialize("", silent=True):
            print(f"{label}: filesystem credentials unavailable (set FS_METHOD or FTP_HOST/FTP_USER/FTP_PASS)", file=sys.stderr)
            return 1
        result = run(container.new_installer(probe))
    container.scheduler.reconcile(dropin_active=container.dropin_loaded(), is_administrative_context=True)
    return _print_result(label, result)


def _cmd_status(container: DropinContainer, as_json: bool) -> int:
    config = container.config
    resolver = container.resolver
    installed = resolver.installed_record() if resolver.dropin_exists() else None
    bundled = resolver.bundled_record()
    entry = container.scheduler.next_scheduled()
    info: Dict[str, object] = {
        "status": resolver.resolve().value,
        "label": resolver.describe(),
        "connected": resolver.connection_status(),
        "target": str(config.target_path),
        "installed_version": installed.version if installed else "",
        "installed_uri": installed.uri if installed else "",
        "bundled_version": bundled.version if bundled else "",
        "bundle_defines_cache_api": defines_cache_api(config.bundled_path),
        "redis_url": obscure_url_secrets(config.redis_url),
        "next_discard_metrics": entry.next_run_at.isoformat() if entry and entry.next_run_at else "",
    }
    if as_json:
        print(json.dumps(info, indent=2, sort_keys=True))
        return 0
    print(f"Config dir: {config.config_dir}")
    print(f"Env file: {get_env_path(config.config_dir)}")
    for key, value in info.items():
        print(f"{key}: {value if value not in (None, '') else '-'}")
    return 0


def _cmd_header(path: Path) -> int:
    try:
        record = load_record(path)
    except OSError as exc:
        print(f"cannot read {path}: {exc}", file=sys.stderr)
        return 1
    print(f"uri: {record.uri or '-'}")
    print(f"version: {record.version or '-'}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage the object-cache drop-in")
    parser.add_argument(
        "--config-dir",
        default=str(DEFAULT_CONFIG_DIR),
        help="Directory holding the .env config (default: ~/.config/cache-dropin)",
    )
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"))
    sub = parser.add_subparsers(dest="command")

    status = sub.add_parser("status", help="Show drop-in status")
    status.add_argument("--json", action="store_true", help="Print status as JSON")
    sub.add_parser("enable", help="Install the bundled drop-in and flush the cache")
    sub.add_parser("disable", help="Remove the drop-in and flush the cache")
    sub.add_parser("update", help="Replace the drop-in with the bundled version")
    sub.add_parser("flush", help="Flush the object cache")
    sub.add_parser("test-fs", help="Check that the drop-in slot can be written")
    sub.add_parser("tick", help="Run due scheduled hooks once")
    sub.add_parser("deactivate", help="Unschedule hooks and remove our drop-in")
    header = sub.add_parser("header", help="Print the header record of a drop-in file")
    header.add_argument("path")

    serve = sub.add_parser("serve", help="Run the admin web UI")
    serve.add_argument("--host", default="127.0.0.1", help="Bind host")
    serve.add_argument("--port", type=int, default=8766, help="Bind port")
    return parser


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)

    if args.command == "header":
        return _cmd_header(Path(args.path).expanduser())

    config_dir = Path(args.config_dir).expanduser().resolve()
    container = build_container(config=load_config(config_dir))
    command = args.command or "status"

    if command == "status":
        return _cmd_status(container, getattr(args, "json", False))
    if command == "enable":
        return _mutate(container, "enable", lambda installer: installer.install())
    if command == "disable":
        return _mutate(container, "disable", lambda installer: installer.remove())
    if command == "update":
        return _mutate(container, "update", lambda installer: installer.update())
    if command == "flush":
        flushed = container.cache.flush()
        print("flush: ok" if flushed else "flush: failed", file=sys.stdout if flushed else sys.stderr)
        return 0 if flushed else 1
    if command == "test-fs":
        with container.new_probe() as probe:
            return _print_result("test-fs", probe.test_writability())
    if command == "tick":
        counts = container.scheduler.tick_once()
        print(f"due={counts['due']} ran={counts['ran']} failed={counts['failed']}")
        return 1 if counts["failed"] else 0
    if command == "deactivate":
        container.on_deactivation()
        print("deactivate: done")
        return 0
    if command == "serve":
        from cache_dropin.admin.app import create_app
        import uvicorn

        uvicorn.run(create_app(container), host=args.host, port=args.port, log_level=args.log_level.lower())
        return 0

    parser.print_help()
    return 2


if __name__ == "__main__":
    sys.exit(main())
