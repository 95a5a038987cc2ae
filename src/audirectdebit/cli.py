"""Command-line interface for the AU Direct Debit gateway."""

import logging
import sys
from pathlib import Path

import click

from audirectdebit import __version__
from audirectdebit.auth.secret import SecretStore
from audirectdebit.config.loader import Settings
from audirectdebit.errors import ConfigurationError

DEFAULT_CONFIG = Path("/etc/audirectdebit/config.yaml")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_settings(config: str) -> Settings:
    """Settings from an optional config file plus environment overrides."""
    from audirectdebit.config.loader import load_config, settings_from_config, validate_config

    path = Path(config)
    if not path.exists():
        return settings_from_config(None)
    raw = load_config(path)
    if raw is None:
        return settings_from_config(None)
    errors = validate_config(raw)
    if errors:
        click.echo("Config validation errors:", err=True)
        for e in errors:
            click.echo(f"  • {e}", err=True)
        sys.exit(1)
    return settings_from_config(raw)


def _store(settings: Settings) -> SecretStore:
    try:
        return settings.secret_store()
    except ConfigurationError as exc:
        click.echo(f"✗  {exc}", err=True)
        sys.exit(1)


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.version_option(version=__version__, prog_name="audirectdebit")
@click.option(
    "--config",
    "-c",
    default=str(DEFAULT_CONFIG),
    envvar="AUDD_CONFIG",
    show_default=True,
    help="Path to gateway config.yaml (optional)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config: str, verbose: bool) -> None:
    """AU Direct Debit gateway: bank account capture web forms."""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


# ── secret commands ───────────────────────────────────────────────────────────


@main.command("check-secret")
@click.pass_context
def check_secret_cmd(ctx: click.Context) -> None:
    """Self-test the web form MAC secret and algorithm."""
    from audirectdebit.auth.webform_mac import check_secret

    store = _store(_load_settings(ctx.obj["config"]))
    click.echo(f"Checking web form MAC secret at {store.secret_file} ({store.algorithm})…")
    try:
        check_secret(store)
    except ConfigurationError as exc:
        click.echo(f"✗  {exc}", err=True)
        sys.exit(1)
    click.echo("✓  Web form MAC secret is OK")


@main.command("sign-test")
@click.pass_context
def sign_test_cmd(ctx: click.Context) -> None:
    """Print the MAC of the self-test message (compare across replicas)."""
    from audirectdebit.auth.webform_mac import sign_test

    store = _store(_load_settings(ctx.obj["config"]))
    try:
        click.echo(sign_test(store))
    except ConfigurationError as exc:
        click.echo(f"✗  {exc}", err=True)
        sys.exit(1)


@main.command("generate-secret")
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--bytes", "nbytes", default=32, show_default=True, help="Key length in bytes")
@click.option("--force", is_flag=True, help="Overwrite an existing secret file")
def generate_secret_cmd(path: Path, nbytes: int, force: bool) -> None:
    """Write a new random web form MAC secret to PATH."""
    from audirectdebit.auth.secret import SecretKey, destroy_secret
    from audirectdebit.config.writer import generate_secret, write_secret

    if nbytes < 16:
        click.echo("Secret must be at least 16 bytes.", err=True)
        sys.exit(1)
    if path.exists() and not force:
        click.echo(f"Secret file already exists: {path} (use --force to replace)", err=True)
        sys.exit(1)
    secret = SecretKey(generate_secret(nbytes), "HmacSHA256")
    try:
        write_secret(path, secret.material)
    finally:
        destroy_secret(secret)
    click.echo(f"✓  Wrote {nbytes}-byte secret to {path}")


# ── serve command ─────────────────────────────────────────────────────────────


@main.command()
@click.option("--host", default="0.0.0.0", show_default=True, help="Bind host")
@click.option("--port", default=8080, show_default=True, help="Bind port")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Self-test the MAC secret, then start the gateway API server."""
    import uvicorn

    from audirectdebit.api.routes import create_app

    settings = _load_settings(ctx.obj["config"])
    try:
        app = create_app(settings)
    except ConfigurationError as exc:
        click.echo(f"✗  {exc}", err=True)
        sys.exit(1)
    click.echo(f"Starting AU Direct Debit gateway at http://{host}:{port}")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
