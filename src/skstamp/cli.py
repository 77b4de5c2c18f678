"""SKStamp CLI — RFC 3161 timestamps from the command line.

Usage:
    skstamp query <file> [--algorithm sha256] [-o request.tsq]
    skstamp stamp <file> [--tsa URL] [--ca-file chain.pem]
    skstamp verify <file> --ca-file chain.pem [--token file.tsr]
    skstamp info <file.tsr>
    skstamp serve [--port 8400]
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .errors import TimestampError
from .models import DigestAlgorithm, TimestampConfig
from .request import encode_request
from .timestamp import (
    DEFAULT_TSA_URL,
    create_timestamp_request,
    load_tsr_file,
    timestamp_document,
    verify_document,
)
from .verify import load_certificate_file

console = Console()

_ALGORITHMS = [a.value for a in DigestAlgorithm]


def _format_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S UTC") if value else "unknown"


@click.group()
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging")
def main(verbose: bool) -> None:
    """SKStamp — RFC 3161 trusted timestamps.

    Prove that a document existed, unchanged, at a certified point in time.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--algorithm",
    default="sha256",
    type=click.Choice(_ALGORITHMS),
    help="Hash algorithm (default: sha256)",
)
@click.option("--no-nonce", is_flag=True, default=False, help="Omit the request nonce")
@click.option("--no-cert", is_flag=True, default=False, help="Do not ask for the TSA certificate")
@click.option("--policy", "policy_id", default=None, help="TSA policy OID to request")
@click.option(
    "-o",
    "--output",
    default=None,
    type=click.Path(dir_okay=False),
    help="Where to write the request (default: <file>.tsq)",
)
def query(
    file: str,
    algorithm: str,
    no_nonce: bool,
    no_cert: bool,
    policy_id: Optional[str],
    output: Optional[str],
) -> None:
    """Write a DER TimeStampReq for FILE without contacting a TSA.

    The .tsq file can be sent with any RFC 3161 client, for example
    ``curl --data-binary @file.tsq -H 'Content-Type: application/timestamp-query'``.
    """
    config = TimestampConfig(
        hash_algorithm=DigestAlgorithm(algorithm),
        nonce=not no_nonce,
        request_cert=not no_cert,
        policy_id=policy_id,
    )
    try:
        request = create_timestamp_request(Path(file).read_bytes(), config)
    except TimestampError as exc:
        console.print(f"[red]Cannot build request: {exc}[/]")
        sys.exit(1)

    out_path = Path(output) if output else Path(file + ".tsq")
    out_path.write_bytes(encode_request(request))

    console.print(
        Panel(
            f"[bold green]Request written[/]\n\n"
            f"  File:       {Path(file).resolve()}\n"
            f"  Digest:     {request.digest.hex()[:32]}...\n"
            f"  Algorithm:  {request.algorithm.value}\n"
            f"  Nonce:      {request.nonce if request.nonce is not None else '(none)'}\n"
            f"  Cert req:   {'yes' if request.cert_req else 'no'}\n"
            f"  Request:    {out_path}",
            title="SKStamp Query",
            border_style="green",
        )
    )


# ---------------------------------------------------------------------------
# Stamp
# ---------------------------------------------------------------------------


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--tsa",
    "tsa_url",
    default=None,
    help=f"TSA endpoint URL (default: {DEFAULT_TSA_URL})",
)
@click.option(
    "--algorithm",
    default="sha256",
    type=click.Choice(_ALGORITHMS),
    help="Hash algorithm (default: sha256)",
)
@click.option(
    "--ca-file",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="Trusted TSA certificate chain (PEM or DER); enables verification",
)
@click.option("--timeout", default=10.0, show_default=True, help="TSA timeout in seconds")
@click.option("--user", "username", default=None, help="TSA basic-auth user")
@click.option(
    "--password",
    default=None,
    envvar="SKSTAMP_TSA_PASSWORD",
    help="TSA basic-auth password (or $SKSTAMP_TSA_PASSWORD)",
)
@click.option(
    "--no-save",
    is_flag=True,
    default=False,
    help="Do not save .tsr token file alongside document",
)
def stamp(
    file: str,
    tsa_url: Optional[str],
    algorithm: str,
    ca_file: Optional[str],
    timeout: float,
    username: Optional[str],
    password: Optional[str],
    no_save: bool,
) -> None:
    """Timestamp a document via an RFC 3161 TSA.

    Hashes the file, submits the hash to a Time Stamping Authority, and
    saves the token as <file>.tsr. With --ca-file the token is verified
    before it is saved.
    """
    config = TimestampConfig(
        tsa_url=tsa_url or DEFAULT_TSA_URL,
        hash_algorithm=DigestAlgorithm(algorithm),
        timeout_seconds=timeout,
        username=username,
        password=password,
        ca_file=ca_file,
    )

    with console.status(f"[bold]Submitting timestamp request to {config.tsa_url}...[/]"):
        try:
            result = timestamp_document(
                file_path=file,
                config=config,
                save_token=not no_save,
            )
        except (OSError, TimestampError) as exc:
            console.print(f"[red]Timestamp failed: {exc}[/]")
            sys.exit(1)

    if result.error:
        console.print(
            Panel(
                f"[bold red]Timestamp failed[/]\n\n{result.error}",
                title="SKStamp Timestamp",
                border_style="red",
            )
        )
        sys.exit(1)

    token = result.token
    status_color = {"valid": "green", "invalid": "red"}.get(
        result.verification_status.value, "yellow"
    )
    status_text = result.verification_status.value.upper()
    if result.rejection_reason is not None:
        status_text += f" ({result.rejection_reason.value})"

    console.print(
        Panel(
            f"[bold {status_color}]Timestamp {status_text}[/]\n\n"
            f"  File:       {result.file_path}\n"
            f"  Hash:       {result.file_hash[:32]}...\n"
            f"  Algorithm:  {result.hash_algorithm.value}\n"
            f"  TSA:        {result.tsa_url}\n"
            f"  Certified:  {_format_time(token.gen_time)}\n"
            f"  Serial:     {token.serial_number}\n"
            f"  Token:      {result.tsr_path or '(not saved)'}",
            title="SKStamp Timestamp",
            border_style=status_color,
        )
    )

    if result.verification_status.value == "invalid":
        sys.exit(1)


# ---------------------------------------------------------------------------
# Verify
# ---------------------------------------------------------------------------


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--token",
    "tsr_file",
    default=None,
    type=click.Path(),
    help="Path to .tsr token file (default: <file>.tsr)",
)
@click.option(
    "--ca-file",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Trusted TSA certificate chain (PEM or DER)",
)
@click.option(
    "--algorithm",
    default=None,
    type=click.Choice(_ALGORITHMS),
    help="Hash algorithm (default: the token's own)",
)
def verify(
    file: str,
    tsr_file: Optional[str],
    ca_file: str,
    algorithm: Optional[str],
) -> None:
    """Verify a timestamp token against a document.

    Checks that the token covers the file's current content, that its
    signature is intact and that the TSA chains to --ca-file.
    """
    file_path = Path(file).resolve()
    tsr_path = tsr_file or str(file_path) + ".tsr"

    if not Path(tsr_path).exists():
        console.print(f"[red]Token file not found: {tsr_path}[/]")
        console.print(
            "[dim]Run [bold]skstamp stamp <file>[/] first to create a token.[/]"
        )
        sys.exit(1)

    try:
        token = load_tsr_file(tsr_path)
        trusted = load_certificate_file(ca_file)
        result = verify_document(
            file_path,
            token,
            trusted,
            DigestAlgorithm(algorithm) if algorithm else None,
        )
    except TimestampError as exc:
        console.print(f"[red]Verification error: {exc}[/]")
        sys.exit(1)

    status_color = "green" if result.accepted else "red"
    status_text = "VALID" if result.accepted else f"INVALID ({result.reason.value})"
    detail = f"\n  Reason:    {result.detail}" if result.detail else ""

    console.print(
        Panel(
            f"[bold {status_color}]Timestamp {status_text}[/]\n\n"
            f"  File:      {file_path}\n"
            f"  Token:     {tsr_path}\n"
            f"  Certified: {_format_time(token.gen_time)}\n"
            f"  Serial:    {token.serial_number}"
            f"{detail}",
            title="SKStamp Timestamp Verify",
            border_style=status_color,
        )
    )

    if not result.accepted:
        sys.exit(1)


# ---------------------------------------------------------------------------
# Info
# ---------------------------------------------------------------------------


@main.command()
@click.argument("tsr_file", type=click.Path(exists=True, dir_okay=False))
def info(tsr_file: str) -> None:
    """Show details of a .tsr timestamp token file.

    Parses and displays the token metadata without verifying against a
    specific document.
    """
    try:
        token = load_tsr_file(tsr_file)
    except TimestampError as exc:
        console.print(f"[red]Failed to load token: {exc}[/]")
        sys.exit(1)

    imprint = token.message_imprint
    algorithm = imprint.algorithm
    signer = token.signer_info

    table = Table(title=f"Timestamp Token: {tsr_file}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    table.add_row("Status", token.status.name.lower())
    table.add_row("Status String", token.status_string or "—")
    table.add_row("Certified Time", _format_time(token.gen_time))
    table.add_row("Serial Number", str(token.serial_number))
    table.add_row("Hash Algorithm", algorithm.value if algorithm else imprint.algorithm_oid)
    table.add_row("Message Imprint", imprint.digest.hex()[:32] + "...")
    table.add_row("Policy OID", token.policy_id)
    table.add_row(
        "Accuracy",
        f"{token.accuracy.total_seconds}s" if token.accuracy else "—",
    )
    table.add_row("Ordering", "yes" if token.ordering else "no")
    table.add_row("Nonce", str(token.nonce) if token.nonce is not None else "—")
    table.add_row(
        "Signer",
        f"serial {signer.serial_number}"
        if signer.serial_number is not None
        else f"key id {signer.subject_key_identifier.hex()}",
    )
    table.add_row("Embedded Certificates", str(len(token.certificates)))
    table.add_row("Token Size", f"{len(token.token_der)} bytes")

    console.print(table)


# ---------------------------------------------------------------------------
# Serve
# ---------------------------------------------------------------------------


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8400, help="Port")
def serve(host: str, port: int) -> None:
    """Start the SKStamp API server."""
    import uvicorn

    console.print(
        f"[bold]SKStamp API[/] listening on [cyan]http://{host}:{port}[/]"
    )
    uvicorn.run("skstamp.api:app", host=host, port=port, log_level="info")
