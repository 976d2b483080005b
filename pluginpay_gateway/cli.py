"""
Command line interface: run a gateway, verify receipts, sign test requests.
"""
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import typer

from .auth.authenticator import DEFAULT_PROTOCOL, sign_request_headers
from .exceptions import ConfigurationError
from .oracle.receipts import verify_receipt
from .version import __version__

app = typer.Typer(help="PluginPay gateway tools", no_args_is_help=True)


def _version_callback(value: bool):
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", callback=_version_callback, is_eager=True, help="Show version and exit"
    ),
):
    pass


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Interface to bind"),
    port: int = typer.Option(8080, help="Port to listen on"),
    log_level: str = typer.Option("info", help="Log level"),
):
    """Run the gateway configured by PLUGINPAY_* environment variables."""
    import uvicorn

    from .config import GatewaySettings
    from .gateway import build_gateway
    from .server import create_app

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        settings = GatewaySettings.from_env()
    except (ConfigurationError, ValueError) as e:
        typer.secho(f"Invalid configuration: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)

    gateway = build_gateway(settings)
    uvicorn.run(create_app(gateway), host=host, port=port, log_level=log_level.lower())


@app.command("verify-receipt")
def verify_receipt_command(
    receipt_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Receipt JSON, or a full call response"),
    verifier: str = typer.Option(..., "--verifier", "-v", help="Expected verifier address"),
):
    """Recompute a receipt's hash and check its signature."""
    try:
        document = json.loads(receipt_file.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        typer.secho(f"Cannot read receipt: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)

    receipt = document.get("receipt", document) if isinstance(document, dict) else document
    try:
        valid = verify_receipt(receipt, verifier)
    except Exception as e:
        typer.secho(f"Malformed receipt: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    if valid:
        typer.secho("✓ Receipt is valid", fg=typer.colors.GREEN)
        return
    typer.secho("✗ Receipt does not match the verifier", fg=typer.colors.RED)
    raise typer.Exit(code=1)


@app.command("sign-request")
def sign_request(
    private_key: str = typer.Option(..., "--private-key", envvar="PLUGINPAY_CALLER_KEY", help="Caller private key"),
    body: str = typer.Option(..., "--body", help="Request body as JSON"),
    timestamp: Optional[int] = typer.Option(None, help="Timestamp in ms (default: now)"),
    protocol: str = typer.Option(DEFAULT_PROTOCOL, help="Protocol name in the signed message"),
):
    """Print authentication headers for a request body."""
    try:
        parsed = json.loads(body)
    except ValueError as e:
        typer.secho(f"Body is not valid JSON: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)

    headers = sign_request_headers(private_key, parsed, timestamp, protocol)
    json.dump(headers, sys.stdout, indent=2)
    sys.stdout.write("\n")


if __name__ == "__main__":
    app()
