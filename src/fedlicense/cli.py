"""CLI entry point for fedlicense - operator tools for signed plugin licenses."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from fedlicense import __version__
from fedlicense.config import Settings
from fedlicense.errors import LicensingError
from fedlicense.signing import (
    load_public_key,
    parse_license,
    private_key_pem,
    public_key_pem,
    verify_envelope,
)

# -- CLI group --------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="fedlicense")
@click.option("-v", "--verbose", is_flag=True, help="Verbose output")
def cli(verbose: bool):
    """Operator tools for fedDSP plugin licenses."""
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")


# -- keygen ----------------------------------------------------------------------------


@cli.command()
@click.option("-o", "--output", type=click.Path(dir_okay=False), default=None,
              help="Write the private key PEM here instead of stdout")
def keygen(output):
    """Generate an Ed25519 key pair for license signing."""
    key = Ed25519PrivateKey.generate()
    private_pem = private_key_pem(key)
    if output:
        Path(output).write_text(private_pem, encoding="utf-8")
        click.echo(f"Private key written to {output}")
    else:
        click.echo(private_pem, nl=False)
    click.echo(public_key_pem(key), nl=False)


# -- inspect ---------------------------------------------------------------------------


def _read_envelope(license_path):
    try:
        return parse_license(Path(license_path).read_text(encoding="utf-8"))
    except ValueError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)


@cli.command()
@click.argument("license_path", type=click.Path(exists=True, dir_okay=False))
def inspect(license_path):
    """Decode a license file and print its envelope."""
    envelope = _read_envelope(license_path)
    click.echo(json.dumps(envelope.model_dump(mode="json"), indent=2, ensure_ascii=False))


# -- verify ----------------------------------------------------------------------------


@cli.command()
@click.argument("license_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--public-key", "public_key_path", type=click.Path(exists=True, dir_okay=False),
              required=True, help="Ed25519 public key PEM")
def verify(license_path, public_key_path):
    """Check a license file's signature against a public key."""
    envelope = _read_envelope(license_path)
    try:
        public_key = load_public_key(Path(public_key_path).read_text(encoding="utf-8"))
    except LicensingError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)

    payload = envelope.payload
    if verify_envelope(envelope, public_key):
        click.secho(f"Valid: {payload.license_id} ({payload.product_id}) for {payload.license_to}",
                    fg="green")
    else:
        click.secho("INVALID signature", fg="red", err=True)
        sys.exit(1)


# -- events / replay -------------------------------------------------------------------


def _runtime():
    from fedlicense.runtime import build_runtime

    try:
        return build_runtime(Settings.from_env(), local=True)
    except LicensingError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)


@cli.command()
@click.option("--order", "order_id", default=None, help="Only events for this LS order id")
def events(order_id):
    """List logged webhook events (oldest first)."""
    runtime = _runtime()
    keys = runtime.events.list_keys()
    shown = 0
    for key in keys:
        event = runtime.events.get(key)
        if event is None or (order_id and event.order_id != order_id):
            continue
        click.echo(f"{key}\t{event.event_name}\t{event.order_id}")
        shown += 1
    click.echo(f"{shown} event(s)")


@cli.command()
@click.argument("event_key")
def replay(event_key):
    """Re-apply a logged webhook event to the license store."""
    runtime = _runtime()
    event = runtime.events.get(event_key)
    if event is None:
        click.secho(f"Event not found: {event_key}", fg="red", err=True)
        sys.exit(1)

    try:
        outcome = runtime.lifecycle.process(event.payload, event_key)
    except LicensingError as e:
        click.secho(f"Replay failed: {e}", fg="red", err=True)
        sys.exit(1)
    click.echo(f"{outcome.status} {outcome.message}")
    if outcome.record is not None:
        click.echo(f"  key:    {outcome.record.key}")
        click.echo(f"  status: {outcome.record.status}")


# -- serve -----------------------------------------------------------------------------


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=8042, show_default=True)
def serve(host, port):
    """Run the webhook, account and admin endpoints locally."""
    from fedlicense.server import serve as run_server

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    run_server(host, port)
