"""Command-line entry point: analyze a diff with a tool-calling model."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.client import AIClient, client_settings_from
from .ai.orchestration import (
    AnalysisResult,
    CancellationError,
    CancellationToken,
    ProgressEvent,
    ToolCallingAnalyzer,
    ToolRegistry,
)
from .ai.tools import core_tools
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_NONE_VALUES = {"none", "null"}
_LOGGER = logging.getLogger(__name__)

EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


def configure_logging(
    debug: bool = False,
    *,
    level_name: str | None = None,
    log_file: str | None = None,
    force: bool = False,
) -> None:
    """Configure structured logging for the command-line tool."""

    level = logging.DEBUG if debug else _level_from_name(level_name)
    log_path = logging_utils.setup_logging(level, log_file=log_file, force=force)
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
    except OSError as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings().clamp()


def build_registry(settings: Settings) -> ToolRegistry:
    """Registry holding the built-in tools.

    Investigation tools (code search, symbol lookup) are registered by the
    embedding application on top of these.
    """

    return ToolRegistry(core_tools(subagent_timeout_seconds=float(settings.request_timeout_seconds)))


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the `diffscout` console script."""

    args = _parse_cli_args(argv)
    debug = args.debug or _env_flag("DIFFSCOUT_DEBUG", default=False)
    configure_logging(debug, log_file=args.log_file)

    settings_path = args.settings_path or os.environ.get("DIFFSCOUT_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(EXIT_USAGE) from exc

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return

    if settings.debug_logging and not debug:
        debug = True
    configure_logging(debug, level_name=settings.log_level, log_file=args.log_file, force=True)

    if not args.diff:
        print("A diff file (or '-' for stdin) is required.", file=sys.stderr)
        raise SystemExit(EXIT_USAGE)
    try:
        diff_text = _read_input(args.diff)
    except OSError as exc:
        print(f"Unable to read {args.diff}: {exc}", file=sys.stderr)
        raise SystemExit(EXIT_USAGE) from exc
    if not diff_text.strip():
        print("The diff is empty; nothing to analyze.", file=sys.stderr)
        raise SystemExit(EXIT_USAGE)

    token = CancellationToken()
    try:
        result = asyncio.run(_run_analysis(settings, diff_text, token, show_progress=args.progress, debug=debug))
    except (CancellationError, KeyboardInterrupt):
        token.cancel("interrupted")
        print("Analysis cancelled.", file=sys.stderr)
        raise SystemExit(EXIT_CANCELLED) from None

    print(result.analysis_text)
    print(
        f"\nTool calls: total {result.total_calls} "
        f"(ok {result.successful_calls}, failed {result.failed_calls})",
        file=sys.stderr,
    )
    if args.json_output:
        _write_json(result, Path(args.json_output).expanduser())
    if result.error:
        raise SystemExit(EXIT_FAILURE)


async def _run_analysis(
    settings: Settings,
    diff_text: str,
    token: CancellationToken,
    *,
    show_progress: bool = False,
    debug: bool = False,
) -> AnalysisResult:
    client_settings = client_settings_from(settings)
    client_settings.debug_logging = debug or settings.debug_logging
    client = AIClient(client_settings)
    analyzer = ToolCallingAnalyzer(client, build_registry(settings), settings.analysis_limits())

    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")
    try:
        return await analyzer.analyze(diff_text, token, _print_progress if show_progress else None)
    finally:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGINT)
        await client.aclose()


def _print_progress(event: ProgressEvent, stream: TextIO | None = None) -> None:
    destination = stream or sys.stderr
    if event.kind == "iteration":
        destination.write(f"[{event.label}] iteration {event.iteration}/{event.max_iterations}\n")
        return
    status = "ok" if event.success else "failed"
    duration = f" {event.duration_ms:.0f}ms" if event.duration_ms is not None else ""
    destination.write(f"[{event.label}]   {event.tool_name} {status}{duration}\n")
    for nested in event.nested_calls:
        nested_status = "ok" if nested.success else "failed"
        destination.write(f"[{event.label}]     -> {nested.name} {nested_status}\n")


def _read_input(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    return Path(source).expanduser().read_text(encoding="utf-8")


def _write_json(result: AnalysisResult, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    _LOGGER.info("Analysis report written to %s", path)


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _level_from_name(name: str | None) -> int:
    level = logging.getLevelName((name or "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="diffscout",
        add_help=True,
        description="Review a code change with a tool-calling language model.",
    )
    parser.add_argument(
        "diff",
        nargs="?",
        metavar="DIFF_FILE",
        help="Unified diff to analyze, or '-' to read from stdin.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.diffscout/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "--log-file",
        metavar="PATH",
        help="Write the log here instead of ~/.diffscout/logs/diffscout.log.",
    )
    parser.add_argument("--progress", action="store_true", help="Report iterations and tool calls on stderr.")
    parser.add_argument("--json", dest="json_output", metavar="PATH", help="Also write the full report as JSON.")
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
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    normalized = raw_value.strip()
    if normalized.lower() in _NONE_VALUES and _allows_none(annotation):
        return None
    target = _resolve_annotation(annotation)

    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is dict:
        try:
            payload = json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
        if not isinstance(payload, dict):
            raise ValueError("Dict overrides must be valid JSON objects")
        return payload
    return normalized


def _allows_none(annotation: Any) -> bool:
    return type(None) in get_args(annotation)


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


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
    api_key = payload.get("api_key", "")
    if isinstance(api_key, str):
        payload["api_key"] = redact_secret(api_key)
    metadata = {
        "path": str(store.path),
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    output = {"settings": payload, "meta": metadata}
    json.dump(output, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("DIFFSCOUT_"))
