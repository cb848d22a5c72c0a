"""Command line entry point for running an analysis tool against a prompt file."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.ai_types import ModelClientProtocol
from .ai.client import AnthropicModelClient
from .ai.errors import PersistenceError, PromptTooLargeError, StreamError, TransportError
from .ai.openai_client import OpenAICompatibleModelClient
from .ai.orchestration.budget import describe_plan
from .ai.orchestration.runner import ToolRequest, ToolRunner
from .services.settings import Settings, SettingsStore, redact_secret
from .services.telemetry import InMemoryTelemetrySink, summarize_usage
from .utils import logging as logging_utils
from .utils.file_io import read_text

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_LOGGER = logging.getLogger(__name__)
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}

EXIT_OK = 0
EXIT_USAGE = 2
EXIT_PROMPT_TOO_LARGE = 3
EXIT_STREAM_FAILURE = 4
EXIT_PERSISTENCE_FAILURE = 5


class ConsoleSink:
    """Output sink that prints progress lines and streamed answer text."""

    def __init__(self, stream: TextIO | None = None, *, delta_stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stderr
        self._delta_stream = delta_stream or sys.stdout
        self._mid_line = False

    def emit(self, text: str) -> None:
        if self._mid_line:
            self._delta_stream.write("\n")
            self._delta_stream.flush()
            self._mid_line = False
        self._stream.write(f"{text}\n")
        self._stream.flush()

    def write_delta(self, text: str) -> None:
        if not text:
            return
        self._delta_stream.write(text)
        self._delta_stream.flush()
        self._mid_line = not text.endswith("\n")


def configure_logging(settings: Settings, *, debug: bool = False) -> None:
    """Point logging at the log directory and level chosen by *settings*."""

    options = logging_utils.LoggingOptions.from_settings(settings, debug=debug)
    log_path = logging_utils.setup_logging(options)
    _LOGGER.debug("Logging to %s (level=%s)", log_path, logging.getLevelName(options.level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_model_client(settings: Settings) -> ModelClientProtocol:
    """Construct the model client for the configured provider."""

    client_settings = settings.client_settings()
    if settings.provider == "openai":
        return OpenAICompatibleModelClient(client_settings)
    return AnthropicModelClient(client_settings)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `inkwell` console script."""

    args = _parse_cli_args(argv)

    settings_path = args.settings_path or os.environ.get("INKWELL_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return EXIT_USAGE

    overrides_mapping: Dict[str, Any] | None = cli_overrides or None
    settings = load_settings(resolved_path, store=settings_store, overrides=overrides_mapping)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return EXIT_OK

    configure_logging(settings, debug=_env_flag("INKWELL_DEBUG", default=False))

    if args.prompt_file is None:
        print("A --prompt-file is required unless --dump-settings is given.", file=sys.stderr)
        return EXIT_USAGE
    prompt_path = Path(args.prompt_file).expanduser()
    try:
        prompt = read_text(prompt_path)
    except OSError as exc:
        print(f"Unable to read prompt file {prompt_path}: {exc}", file=sys.stderr)
        return EXIT_USAGE
    if not prompt.strip():
        print(f"Prompt file {prompt_path} is empty.", file=sys.stderr)
        return EXIT_USAGE

    try:
        config = settings.budget_config()
    except ValueError as exc:
        print(f"Invalid token budget settings: {exc}", file=sys.stderr)
        return EXIT_USAGE

    save_dir = Path(args.save_dir or settings.save_dir or prompt_path.parent).expanduser()
    request = ToolRequest(
        tool_id=args.tool,
        prompt=prompt,
        save_dir=save_dir,
        system_prompt=args.system if args.system is not None else (settings.system_prompt or None),
        label=args.label,
    )
    sink = ConsoleSink()
    client = build_model_client(settings)
    usage_sink = InMemoryTelemetrySink()
    runner = ToolRunner(client, config, sink=sink, telemetry_sink=usage_sink)
    exit_code = asyncio.run(_execute(runner, client, request, sink=sink, plan_only=args.plan_only))
    if len(usage_sink):
        _LOGGER.info("Usage summary: %s", summarize_usage(usage_sink.tail()))
    return exit_code


async def _execute(
    runner: ToolRunner,
    client: ModelClientProtocol,
    request: ToolRequest,
    *,
    sink: ConsoleSink,
    plan_only: bool,
) -> int:
    try:
        if plan_only:
            _, plan = await runner.plan(request.prompt, system_prompt=request.system_prompt)
            for line in describe_plan(plan, runner.config):
                sink.emit(line)
            return EXIT_OK if plan.feasible else EXIT_PROMPT_TOO_LARGE
        await runner.run(request, on_text=sink.write_delta)
        return EXIT_OK
    except PromptTooLargeError:
        return EXIT_PROMPT_TOO_LARGE
    except StreamError as exc:
        _LOGGER.error("Run %s failed while streaming: %s", request.tool_id, exc)
        return EXIT_STREAM_FAILURE
    except TransportError as exc:
        sink.emit(f"API Error: {exc}")
        return EXIT_STREAM_FAILURE
    except PersistenceError as exc:
        sink.emit(f"Error: {exc}")
        return EXIT_PERSISTENCE_FAILURE
    finally:
        await client.aclose()


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="inkwell",
        add_help=True,
        description="Run a thinking-enabled text analysis tool over a prompt file.",
    )
    parser.add_argument("--prompt-file", metavar="PATH", help="File holding the complete prompt text.")
    parser.add_argument("--tool", default="analysis", help="Tool identifier used for report filenames.")
    parser.add_argument(
        "--save-dir",
        metavar="DIR",
        help="Directory for the report and thinking files (defaults to the prompt file's folder).",
    )
    parser.add_argument("--system", help="System prompt override for this run.")
    parser.add_argument("--label", help="Label used in the thinking trace header.")
    parser.add_argument(
        "--plan-only",
        action="store_true",
        help="Count prompt tokens and print the budget plan without calling the model.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.inkwell/settings.json path.",
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
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    normalized = raw_value.strip()
    if normalized.lower() in {"none", "null"} and _is_optional(annotation):
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


def _is_optional(annotation: Any) -> bool:
    return type(None) in get_args(annotation)


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin is dict:
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
    payload["api_key"] = redact_secret(settings.api_key)
    metadata = {
        "path": str(store.path),
        "key_path": str(store.vault.key_path),
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    output = {"settings": payload, "meta": metadata}
    json.dump(output, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("INKWELL_"))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
