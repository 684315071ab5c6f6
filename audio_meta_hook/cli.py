from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Optional, Sequence

from .app import AudioMetaHookApp
from .config import Settings, load_settings
from .extractor import extract_file
from .models import ProcessingError
from .pipeline import RecordOutcome

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(levelname).1s | %(name)s | %(message)s"

C_RESET = "\033[0m"
LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",  # Cyan
    logging.INFO: "\033[37m",  # Light gray
    logging.WARNING: "\033[33m",  # Yellow
    logging.ERROR: "\033[31m",  # Red
    logging.CRITICAL: "\033[35m",  # Magenta
}


class ShortPathFormatter(logging.Formatter):
    def __init__(self, fmt: str, roots: list[Path]) -> None:
        super().__init__(fmt)
        self.roots = [str(root) for root in roots if root]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for root in self.roots:
            message = message.replace(f"{root}/", "").replace(root, "")
        return message


class ColorFormatter(ShortPathFormatter):
    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = LEVEL_COLORS.get(record.levelno)
        if not color:
            return message
        return f"{color}{message}{C_RESET}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Audio format metadata hook")
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    parser.add_argument("--log-level", default="INFO", help="Python logging level")

    subparsers = parser.add_subparsers(dest="command", required=True)
    probe_parser = subparsers.add_parser("probe", help="Print the format metadata of a local file")
    probe_parser.add_argument("file", type=Path)
    probe_parser.add_argument("--mime", default=None, help="Declared MIME type used when sniffing fails")
    probe_parser.add_argument(
        "--read-trailing",
        action="store_true",
        help="Also read metadata stored after the audio data (ID3v1, trailing chunks)",
    )
    add_parser = subparsers.add_parser("add", help="Store a file as an asset and create a record for it")
    add_parser.add_argument("file", type=Path)
    process_parser = subparsers.add_parser("process", help="Re-run extraction for existing records")
    process_parser.add_argument("keys", nargs="+")
    subparsers.add_parser("watch", help="Re-run extraction whenever a file below the asset root changes")
    return parser


def configure_logging(level_name: str, settings: Settings) -> None:
    log_level = getattr(logging, level_name.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(log_level)
    handler = logging.StreamHandler()
    handler.setFormatter(ColorFormatter(LOG_FORMAT, [settings.storage.asset_root]))
    root_logger.addHandler(handler)
    logging.getLogger("watchdog").setLevel(logging.WARNING)


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = load_settings(args.config)
    configure_logging(args.log_level, settings)

    if args.command == "probe":
        options = settings.extraction.parse_options(
            declared_mime_type=args.mime,
            skip_trailing_metadata=not args.read_trailing,
        )
        try:
            metadata = extract_file(args.file, options)
        except ProcessingError as exc:
            logger.error("Cannot read %s: %s", args.file, exc)
            raise SystemExit(1) from exc
        print(json.dumps(metadata.to_record(), indent=2))
        return

    app = AudioMetaHookApp.create(settings)
    try:
        match args.command:
            case "add":
                key = app.add_file(args.file)
                record = app.records.read_one(key, context=app.context) or {}
                print(json.dumps({"key": key, **record}, indent=2))
            case "process":
                outcomes = app.process(args.keys)
                _print_outcomes(outcomes)
                if any(not outcome.ok for outcome in outcomes):
                    raise SystemExit(1)
            case "watch":
                asyncio.run(app.get_watcher().run())
            case _:
                parser.error("Unknown command")
    except ProcessingError as exc:
        logger.error("%s", exc)
        raise SystemExit(1) from exc
    finally:
        app.close()


def _print_outcomes(outcomes: list[RecordOutcome]) -> None:
    for outcome in outcomes:
        if outcome.ok:
            detail = "skipped (no file)" if outcome.skipped else json.dumps(dict(outcome.fields))
        else:
            detail = f"failed while {outcome.failed_in.value if outcome.failed_in else 'processing'}: {outcome.error}"
        print(f"{outcome.record_key}: {detail}")


if __name__ == "__main__":
    main()
