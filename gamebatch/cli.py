"""Command line interface for gamebatch."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from rich.logging import RichHandler

from . import __version__
from .cli_progress import BatchProgressDisplay, render_configuration_summary
from .errors import InvariantViolation
from .models import BatchConfig, BatchItem
from .orchestrator import BatchOrchestrator, restore_backups
from .services.archiver import level_label

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_USAGE = 2


class CLIError(RuntimeError):
    """Raised when CLI validation/execution fails."""


def _setup_logging(debug: bool, silent: bool, log_level: Optional[str]) -> str:
    """
    Configure logging.

    Default behavior is silent unless --debug, --log-level or LOG_LEVEL
    is provided. Returns a string describing effective mode.
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    logging.disable(logging.NOTSET)

    env_level = os.getenv("LOG_LEVEL")
    if silent or (not debug and not log_level and not env_level):
        logging.disable(logging.CRITICAL)
        root_logger.setLevel(logging.CRITICAL + 1)
        return "silent"

    if debug:
        level = logging.DEBUG
    else:
        level = getattr(logging, (log_level or env_level or "INFO").upper(), logging.INFO)

    handler = RichHandler(
        rich_tracebacks=True,
        markup=True,
        show_time=False,
        show_path=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    return logging.getLevelName(level)


def _strip_optional_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def _load_env_file(path: Path, override: bool = False) -> None:
    if not path.exists():
        raise CLIError(f"env file not found: {path}")
    if not path.is_file():
        raise CLIError(f"env path is not a file: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"could not read env file {path}: {exc}") from exc

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue

        value = _strip_optional_quotes(value.strip())
        if override or key not in os.environ:
            os.environ[key] = value


def _resolve_default_env_file() -> Optional[Path]:
    default_env = Path(".env")
    return default_env if default_env.exists() and default_env.is_file() else None


def load_manifest(path: Path) -> List[Dict[str, Any]]:
    """
    Read a manifest: a JSON list of {path, name?, app_id?, crack?, zip?, upload?}.

    Relative paths are resolved against the manifest's directory.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise CLIError(f"could not read manifest {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise CLIError(f"manifest {path} is not valid JSON: {exc}") from exc

    if not isinstance(data, list) or not data:
        raise CLIError("manifest must be a non-empty JSON list")

    entries = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict) or not entry.get("path"):
            raise CLIError(f"manifest entry {index} has no path")
        folder = Path(str(entry["path"])).expanduser()
        if not folder.is_absolute():
            folder = path.parent / folder
        crack = bool(entry.get("crack", False))
        compress = bool(entry.get("zip", False))
        upload = bool(entry.get("upload", False))
        if not (crack or compress or upload):
            raise CLIError(f"manifest entry {index} ({folder.name}) selects no operation")
        app_id = str(entry.get("app_id") or "")
        if crack and not app_id.isdigit():
            logger.warning(f"Manifest entry {index} ({folder.name}) has no numeric app_id, its crack will fail")
        entries.append(
            {
                "path": folder,
                "name": str(entry.get("name") or ""),
                "app_id": app_id,
                "crack": crack,
                "compress": compress,
                "upload": upload,
            }
        )
    return entries


async def _build_items(entries: List[Dict[str, Any]]) -> List[BatchItem]:
    """Size every folder off the event loop."""
    return list(
        await asyncio.gather(*(asyncio.to_thread(BatchItem.from_folder, **entry) for entry in entries))
    )


def _install_interrupt(process) -> bool:
    """Route Ctrl+C to cancel-all. Returns False where signals are unsupported."""
    loop = asyncio.get_running_loop()

    def on_interrupt():
        logger.warning("Interrupted, cancelling all remaining work")
        loop.create_task(process.cancel())

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
    except (NotImplementedError, RuntimeError):
        return False
    return True


async def _run_batch(
    entries: List[Dict[str, Any]],
    config: BatchConfig,
    upload_url: Optional[str],
    convert_url: Optional[str],
    cracker_cmd: Optional[str],
) -> int:
    items = await _build_items(entries)
    if any(item.do_upload for item in items) and not upload_url:
        raise CLIError("an upload endpoint is required (--upload-url or GAMEBATCH_UPLOAD_URL)")
    if any(item.do_crack for item in items) and not cracker_cmd:
        raise CLIError("a crack tool is required (--cracker-cmd or GAMEBATCH_CRACKER_CMD)")

    async with BatchOrchestrator(
        config,
        upload_url=upload_url,
        convert_url=convert_url if config.convert_links else None,
        cracker_command=cracker_cmd,
    ) as orchestrator:
        display = BatchProgressDisplay(items)
        process = orchestrator.process(items)
        process.on_status(display.on_status)
        process.on_progress(display.on_progress)
        process.on_slot_claimed(display.on_slot_claimed)
        process.on_slot_progress(display.on_slot_progress)
        process.on_slot_released(display.on_slot_released)
        process.on_finish(display.on_finish)
        process.on_error(display.on_error)

        handled = _install_interrupt(process)
        try:
            summary = await process.wait()
        finally:
            if handled:
                asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
            display.stop()

    return EXIT_FAILURES if summary.has_failures else EXIT_OK


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Load environment variables from this .env file",
    )
    common.add_argument("--debug", action="store_true", help="Enable debug logs")
    common.add_argument("--silent", action="store_true", help="Only print errors")
    common.add_argument(
        "--log-level",
        default=None,
        help="Explicit log level (DEBUG/INFO/WARNING/ERROR)",
    )

    parser = argparse.ArgumentParser(
        prog="gamebatch",
        description="Crack, archive and upload batches of game folders.",
    )
    parser.add_argument("--version", action="version", version=f"gamebatch {__version__}")

    commands = parser.add_subparsers(dest="command")

    run = commands.add_parser("run", help="Process the folders listed in a manifest", parents=[common])
    run.add_argument("manifest", type=Path, help="JSON manifest of game folders")
    run.add_argument("--format", choices=("7z", "zip"), default=None, help="Archive format (default 7z)")
    run.add_argument("--level", type=int, default=None, help="Compression level 0-9 (default 5)")
    run.add_argument("--password", default=None, help="Archive password")
    run.add_argument("--emulator", choices=("goldberg", "ali213"), default=None, help="Steam emulator to apply")
    run.add_argument("--no-convert", action="store_true", help="Keep original upload links")
    run.add_argument("--upload-url", default=None, help="Upload endpoint (default GAMEBATCH_UPLOAD_URL)")
    run.add_argument("--convert-url", default=None, help="Link converter endpoint (default GAMEBATCH_CONVERT_URL)")
    run.add_argument("--cracker-cmd", default=None, help="External crack tool (default GAMEBATCH_CRACKER_CMD)")
    run.add_argument("--max-uploads", type=int, default=None, help="Concurrent uploads (default 3)")
    run.add_argument("--rates", type=Path, default=None, help="Learned rates file")

    restore = commands.add_parser("restore", help="Undo a previous crack of a folder", parents=[common])
    restore.add_argument("folder", type=Path, help="Game folder")
    return parser


def _config_from_args(args) -> BatchConfig:
    try:
        return BatchConfig.from_env(
            archive_format=args.format,
            compression_level=args.level,
            password=args.password,
            emulator=args.emulator,
            convert_links=False if args.no_convert else None,
            max_concurrent_uploads=args.max_uploads,
            rates_path=args.rates.expanduser() if args.rates else None,
        )
    except ValueError as exc:
        raise CLIError(str(exc)) from exc


def _restore(folder: Path) -> int:
    folder = folder.expanduser()
    if not folder.is_dir():
        raise CLIError(f"folder does not exist: {folder}")
    report = restore_backups(folder)
    for name in report.restored:
        print(f"Restored {name}")
    for error in report.errors:
        print(f"ERROR: {error}", file=sys.stderr)
    if not report.restored:
        print("Nothing to restore.")
    return EXIT_FAILURES if report.errors else EXIT_OK


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return EXIT_OK

    used_env_file = args.env_file or _resolve_default_env_file()
    if used_env_file is not None:
        try:
            _load_env_file(Path(used_env_file))
        except CLIError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return EXIT_USAGE

    effective_log_mode = _setup_logging(
        debug=args.debug,
        silent=args.silent,
        log_level=args.log_level,
    )

    try:
        if args.command == "restore":
            return _restore(args.folder)

        manifest = Path(args.manifest).expanduser()
        if not manifest.exists():
            raise CLIError(f"manifest does not exist: {manifest}")
        entries = load_manifest(manifest)
        config = _config_from_args(args)
        upload_url = args.upload_url or os.getenv("GAMEBATCH_UPLOAD_URL")
        convert_url = args.convert_url or os.getenv("GAMEBATCH_CONVERT_URL")
        cracker_cmd = args.cracker_cmd or os.getenv("GAMEBATCH_CRACKER_CMD")

        render_configuration_summary(
            {
                "Manifest": str(manifest),
                "Items": len(entries),
                "Archive": f"{config.archive_format} ({level_label(config.compression_level)})",
                "Password": "yes" if config.password else "no",
                "Emulator": config.emulator,
                "Upload URL": upload_url or "-",
                "Convert Links": convert_url if config.convert_links and convert_url else "no",
                "Max Uploads": config.max_concurrent_uploads,
                "Env File": str(used_env_file) if used_env_file else "-",
                "Logging": effective_log_mode,
            }
        )

        return asyncio.run(_run_batch(entries, config, upload_url, convert_url, cracker_cmd))
    except CLIError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_USAGE
    except InvariantViolation as exc:
        print(f"INTERNAL ERROR: {exc}", file=sys.stderr)
        return EXIT_FAILURES
    except KeyboardInterrupt:
        print("Cancelled.", file=sys.stderr)
        return 130


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
