# src/enricher/cli.py
"""Enricher Command Line Interface.

Entry point for the enricher CLI tool. Two commands:
- local: enrich a local CSV of emails into a local output CSV
- platform: run one batch inside a data platform container
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, NoReturn

import typer
from pydantic import ValidationError

from enricher import __version__
from enricher.contracts.errors import ConfigurationError
from enricher.core.config import EnricherSettings, GeminiSettings, load_settings, parse_duration
from enricher.core.logging import get_logger
from enricher.core.redact import redact

if TYPE_CHECKING:
    from enricher.enrich.gemini import GeminiEnricher

__all__ = ["app"]

logger = get_logger(__name__)

# Exit codes
EXIT_RUN_FAILED = 1
EXIT_CONFIG_ERROR = 2

app = typer.Typer(
    name="enricher",
    help="Email enrichment batch pipeline (local and platform modes).",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"enricher version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from a .env file.

    Args:
        env_file: Explicit path to .env file. If None, searches for .env
                 in current directory and parent directories.

    Returns:
        True if .env was found and loaded, False otherwise.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(f"Error: .env file not found: {env_file}", fg=typer.colors.RED, err=True)
            raise typer.Exit(EXIT_CONFIG_ERROR)
        return load_dotenv(env_file, override=False)

    return load_dotenv(override=False)


def _config_error(prefix: str, message: str) -> NoReturn:
    typer.echo(f"{prefix}: {redact(message)}", err=True)
    raise typer.Exit(EXIT_CONFIG_ERROR)


def _validation_error(e: ValidationError) -> NoReturn:
    typer.echo("Configuration errors:", err=True)
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        typer.echo(f"  - {loc}: {error['msg']}", err=True)
    raise typer.Exit(EXIT_CONFIG_ERROR)


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
        exists=False,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """Email enrichment batch pipeline."""
    from enricher.core.logging import configure_logging

    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "INFO")

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho("Warning: --env-file ignored because --no-dotenv is set.", fg=typer.colors.YELLOW, err=True)


def _resolve_settings(
    settings_path: Path | None,
    *,
    workers: int | None,
    max_retries: int | None,
    request_timeout: str | None,
    rate_limit_rps: float | None,
    fail_fast: bool | None,
    gemini_model: str | None,
    gemini_base_url: str | None,
    capture_audit: bool | None,
    **output_overrides: Any,
) -> EnricherSettings:
    """Merge the settings file, environment and CLI flags.

    Raises:
        typer.Exit: With EXIT_CONFIG_ERROR on any invalid setting
    """
    try:
        settings = load_settings(settings_path)
    except FileNotFoundError:
        _config_error("config error", f"settings file not found: {settings_path}")
    except ValidationError as e:
        _validation_error(e)
    except ConfigurationError as e:
        _config_error("config error", str(e))

    timeout_seconds: float | None = None
    if request_timeout is not None:
        try:
            timeout_seconds = parse_duration(request_timeout)
        except ValueError as e:
            _config_error("config error", f"invalid REQUEST_TIMEOUT: {e}")

    failure_policy = None
    if fail_fast is not None:
        failure_policy = "fail_fast" if fail_fast else "partial_output"

    try:
        settings = settings.with_pool_overrides(
            workers=workers,
            max_retries=max_retries,
            request_timeout_seconds=timeout_seconds,
            rate_limit_rps=rate_limit_rps,
            failure_policy=failure_policy,
        )
        gemini = GeminiSettings.from_environ(**settings.gemini.model_dump())
        gemini_overrides = {
            k: v
            for k, v in {"model": gemini_model, "base_url": gemini_base_url, "capture_audit": capture_audit}.items()
            if v is not None
        }
        if gemini_overrides:
            gemini = GeminiSettings(**{**gemini.model_dump(), **gemini_overrides})
        output = settings.output
        output_updates = {k: v for k, v in output_overrides.items() if v is not None}
        if output_updates:
            output = type(output)(**{**output.model_dump(), **output_updates})
        return settings.model_copy(update={"gemini": gemini, "output": output})
    except ValidationError as e:
        _validation_error(e)
    except ConfigurationError as e:
        _config_error("config error", str(e))


def _build_enricher(gemini: GeminiSettings) -> GeminiEnricher:
    from enricher.enrich.gemini import GeminiEnricher, resolve_api_key

    try:
        return GeminiEnricher(resolve_api_key(gemini), gemini)
    except ConfigurationError as e:
        _config_error("gemini config error", str(e))


# === Shared pool options ===

_SETTINGS_OPTION = typer.Option(None, "--settings", "-s", help="Optional settings YAML file.")
_WORKERS_OPTION = typer.Option(None, "--workers", envvar="WORKERS", help="Concurrent enrichment workers (default 10).")
_MAX_RETRIES_OPTION = typer.Option(
    None, "--max-retries", envvar="MAX_RETRIES", help="Max retries per email for transient failures (default 3)."
)
_REQUEST_TIMEOUT_OPTION = typer.Option(
    None, "--request-timeout", envvar="REQUEST_TIMEOUT", help="Per-email request timeout, e.g. 30s (default 30s)."
)
_RATE_LIMIT_OPTION = typer.Option(
    None, "--rate-limit-rps", envvar="RATE_LIMIT_RPS", help="Global request rate limit in RPS; 0 disables."
)
_FAIL_FAST_OPTION = typer.Option(
    None, "--fail-fast/--no-fail-fast", envvar="FAIL_FAST", help="Stop the run on the first enrichment error."
)
_GEMINI_MODEL_OPTION = typer.Option(None, "--gemini-model", help="Gemini model name (env: GEMINI_MODEL).")
_GEMINI_BASE_URL_OPTION = typer.Option(None, "--gemini-base-url", help="Gemini API base URL (env: GEMINI_BASE_URL).")
_CAPTURE_AUDIT_OPTION = typer.Option(
    None,
    "--capture-audit/--no-capture-audit",
    help="Include grounding sources and search queries in output (env: GEMINI_CAPTURE_AUDIT).",
)


@app.command()
def local(
    input_path: Path = typer.Option(..., "--input", "-i", help="Input CSV file (must include an 'email' column)."),
    output_path: Path = typer.Option(..., "--output", "-o", help="Output CSV file."),
    settings: Path | None = _SETTINGS_OPTION,
    workers: int | None = _WORKERS_OPTION,
    max_retries: int | None = _MAX_RETRIES_OPTION,
    request_timeout: str | None = _REQUEST_TIMEOUT_OPTION,
    rate_limit_rps: float | None = _RATE_LIMIT_OPTION,
    fail_fast: bool | None = _FAIL_FAST_OPTION,
    gemini_model: str | None = _GEMINI_MODEL_OPTION,
    gemini_base_url: str | None = _GEMINI_BASE_URL_OPTION,
    capture_audit: bool | None = _CAPTURE_AUDIT_OPTION,
) -> None:
    """Enrich a local CSV of emails."""
    from enricher.engine.orchestrator import run_local

    config = _resolve_settings(
        settings,
        workers=workers,
        max_retries=max_retries,
        request_timeout=request_timeout,
        rate_limit_rps=rate_limit_rps,
        fail_fast=fail_fast,
        gemini_model=gemini_model,
        gemini_base_url=gemini_base_url,
        capture_audit=capture_audit,
    )
    enricher = _build_enricher(config.gemini)
    try:
        summary = run_local(input_path, output_path, enricher, config.pool)
    except Exception as e:
        typer.echo(f"local run failed: {redact(str(e))}", err=True)
        raise typer.Exit(EXIT_RUN_FAILED) from None
    finally:
        enricher.close()

    typer.echo(f"Wrote {summary.ok_rows + summary.error_rows} rows to {output_path} ({summary.error_rows} errors)")


@app.command()
def platform(
    input_alias: str | None = typer.Option(None, "--input-alias", help="Input dataset alias in RESOURCE_ALIAS_MAP."),
    output_alias: str | None = typer.Option(None, "--output-alias", help="Output alias in RESOURCE_ALIAS_MAP."),
    output_filename: str | None = typer.Option(
        None, "--output-filename", help="File name uploaded into the output dataset (dataset mode only)."
    ),
    output_write_mode: str | None = typer.Option(
        None, "--output-write-mode", help="auto|dataset|stream (auto probes the stream endpoint first)."
    ),
    settings: Path | None = _SETTINGS_OPTION,
    workers: int | None = _WORKERS_OPTION,
    max_retries: int | None = _MAX_RETRIES_OPTION,
    request_timeout: str | None = _REQUEST_TIMEOUT_OPTION,
    rate_limit_rps: float | None = _RATE_LIMIT_OPTION,
    fail_fast: bool | None = _FAIL_FAST_OPTION,
    gemini_model: str | None = _GEMINI_MODEL_OPTION,
    gemini_base_url: str | None = _GEMINI_BASE_URL_OPTION,
    capture_audit: bool | None = _CAPTURE_AUDIT_OPTION,
) -> None:
    """Run one batch in platform mode (uses BUILD2_TOKEN and RESOURCE_ALIAS_MAP)."""
    from enricher.engine.orchestrator import run_platform
    from enricher.platform.env import PlatformEnv
    from enricher.platform.keepalive import KeepaliveConfig, KeepaliveLoop

    config = _resolve_settings(
        settings,
        workers=workers,
        max_retries=max_retries,
        request_timeout=request_timeout,
        rate_limit_rps=rate_limit_rps,
        fail_fast=fail_fast,
        gemini_model=gemini_model,
        gemini_base_url=gemini_base_url,
        capture_audit=capture_audit,
        input_alias=input_alias,
        output_alias=output_alias,
        filename=output_filename,
        write_mode=output_write_mode,
    )

    try:
        env = PlatformEnv.from_environ()
    except ConfigurationError as e:
        _config_error("platform env error", str(e))

    try:
        keepalive_config = KeepaliveConfig.from_environ()
    except ConfigurationError as e:
        _config_error("keepalive config error", str(e))

    enricher = _build_enricher(config.gemini)
    keepalive = KeepaliveLoop(keepalive_config) if keepalive_config is not None else None
    if keepalive is not None:
        keepalive.start()

    try:
        summary = run_platform(env, enricher, config.pool, config.output)
    except Exception as e:
        if keepalive is not None:
            keepalive.stop()
        if isinstance(e, ConfigurationError):
            _config_error("config error", str(e))
        typer.echo(f"platform run failed: {redact(str(e))}", err=True)
        raise typer.Exit(EXIT_RUN_FAILED) from None
    finally:
        enricher.close()

    typer.echo(f"Run {summary.run_id} complete: mode={summary.mode} ok={summary.ok_rows} error={summary.error_rows}")

    # Exiting would get the container restarted and the batch re-run
    if keepalive is not None:
        typer.echo("Platform run complete; keeping module alive")
        keepalive.wait()


if __name__ == "__main__":
    app()
