"""Command-line bootstrap for running a single analysis."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import types
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, Union, get_args, get_origin, get_type_hints

from .ai.analysis import AnalysisSession
from .ai.orchestration.errors import FatalModelError, ServiceUnavailableError
from .ai.orchestration.runner import ModelClient
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

__all__ = ["DEFAULT_SYSTEM_PROMPT", "configure_logging", "load_settings", "run_analysis", "main"]

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_NULL_VALUES = {"none", "null"}

DEFAULT_SYSTEM_PROMPT = (
    "You are a careful code reviewer. Investigate the request with the tools available, "
    "delegate focused questions with run_subagent when useful, and finish by calling "
    "submit_review with the complete review in markdown."
)


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure file and console logging for command-line runs."""

    level = logging.DEBUG if debug else logging.INFO
    console_level = logging.DEBUG if debug else logging.WARNING
    log_path = logging_utils.setup_logging(level, console_level=console_level, force=force)
    _LOGGER.debug("Logging configured (level=%s, file=%s)", logging.getLevelName(level), log_path)


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


async def run_analysis(
    settings: Settings,
    system_prompt: str,
    user_message: str,
    *,
    requires_explicit_completion: bool = True,
    client: ModelClient | None = None,
) -> str:
    """Run one analysis and close the session's client afterwards."""

    session = AnalysisSession(
        settings,
        client=client,
        requires_explicit_completion=requires_explicit_completion,
    )
    try:
        return await session.run(system_prompt, user_message)
    finally:
        await session.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `parley` console script."""

    args = _parse_cli_args(argv)
    debug = args.debug or _env_flag("PARLEY_DEBUG")
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("PARLEY_SETTINGS_PATH")
    store = SettingsStore(Path(settings_path).expanduser() if settings_path else None)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2

    settings = load_settings(store=store, overrides=cli_overrides or None)
    if args.dump_settings:
        _dump_settings(settings, store, overrides=cli_overrides)
        return 0

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    user_message = args.message if args.message is not None else sys.stdin.read()
    if not user_message.strip():
        print("Nothing to analyze: pass a message or pipe one on stdin.", file=sys.stderr)
        return 2
    system_prompt = Path(args.system_prompt_file).read_text(encoding="utf-8") if args.system_prompt_file else DEFAULT_SYSTEM_PROMPT

    try:
        review = asyncio.run(
            run_analysis(
                settings,
                system_prompt,
                user_message,
                requires_explicit_completion=not args.allow_plain_answer,
            )
        )
    except FatalModelError as exc:
        print(exc.user_message, file=sys.stderr)
        return 1
    except ServiceUnavailableError as exc:
        print(f"Service unavailable, try again later: {exc}", file=sys.stderr)
        return 3
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Analysis interrupted by user.")
        return 130

    print(review)
    return 0


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="parley",
        description="Run one tool-calling analysis and print the final review.",
    )
    parser.add_argument("message", nargs="?", help="The analysis request; read from stdin when omitted.")
    parser.add_argument(
        "--system-prompt-file",
        metavar="PATH",
        help="Read the system prompt from PATH instead of the built-in reviewer prompt.",
    )
    parser.add_argument(
        "--allow-plain-answer",
        action="store_true",
        help="Accept a plain text answer instead of requiring submit_review.",
    )
    parser.add_argument("--debug", action="store_true", help="Log at DEBUG level.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.parley/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key, fields[key].type), raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    if get_origin(annotation) in (Union, types.UnionType):
        if raw_value.lower() in _NULL_VALUES:
            return None
        annotation = next(arg for arg in get_args(annotation) if arg is not type(None))
    try:
        if annotation is bool:
            return _parse_bool(raw_value)
        if annotation is int:
            return int(raw_value, 10)
        if annotation is float:
            return float(raw_value)
        if annotation is str:
            return raw_value
        return json.loads(raw_value)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Cannot parse '{raw_value}' as JSON.") from exc


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.name,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": sorted(name for name in os.environ if name.startswith("PARLEY_")),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover - module execution
    raise SystemExit(main())
