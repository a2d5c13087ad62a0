import json
import os

import click

from einvoice.builder import UblInvoiceBuilder, inject_qr
from einvoice.config import load_settings
from einvoice.debug import DebugDumper
from einvoice.errors import EInvoiceError
from einvoice.hashing import invoice_hash
from einvoice.ledger import INITIAL_HASH
from einvoice.log import configure_logging
from einvoice.models import Invoice
from einvoice.qr import build_qr, describe_qr, render_qr_png, validate_qr
from einvoice.signing import InvoiceSigner

current_dir = os.getcwd()


def _read(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def _write_or_echo(content: str, out: str):
    if out:
        with open(out, "w", encoding="utf-8") as f:
            f.write(content)
        click.echo(f"Written to {out}")
    else:
        click.echo(content)


@click.group()
@click.pass_context
def cli(ctx):
    ctx.obj = load_settings()
    configure_logging(ctx.obj)


@click.command(name="hash")
@click.argument("xml_file", type=click.Path(exists=True, dir_okay=False))
def hash_command(xml_file):
    """Print the invoice hash of a rendered invoice."""
    try:
        click.echo(invoice_hash(_read(xml_file)))
    except EInvoiceError as e:
        raise click.ClickException(e.message)


@click.command()
@click.argument("xml_file", type=click.Path(exists=True, dir_okay=False))
def verify(xml_file):
    """Verify the signature of a signed invoice."""
    try:
        valid = InvoiceSigner().verify(_read(xml_file))
    except EInvoiceError as e:
        raise click.ClickException(e.message)
    click.echo("valid" if valid else "invalid")
    if not valid:
        raise SystemExit(1)


@click.command()
@click.argument("xml_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--key", "key_file", required=True, type=click.Path(exists=True), help="EC private key (PEM)")
@click.option("--cert", "cert_file", required=True, type=click.Path(exists=True), help="Certificate (PEM or base64)")
@click.option("--out", default=None, help="Output file, stdout when omitted")
def sign(xml_file, key_file, cert_file, out):
    """Sign a rendered invoice."""
    try:
        signed = InvoiceSigner().sign(_read(xml_file), _read(key_file), _read(cert_file))
    except EInvoiceError as e:
        raise click.ClickException(e.message)
    _write_or_echo(signed.xml, out)


@click.command()
@click.argument("invoice_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--key", "key_file", required=True, type=click.Path(exists=True), help="EC private key (PEM)")
@click.option("--cert", "cert_file", required=True, type=click.Path(exists=True), help="Certificate (PEM or base64)")
@click.option("--icv", default=1, type=int, help="Invoice counter value")
@click.option("--pih", default=INITIAL_HASH, help="Previous invoice hash")
@click.option("--out", default=None, help="Output file, stdout when omitted")
@click.pass_obj
def generate(settings, invoice_file, key_file, cert_file, icv, pih, out):
    """Build, sign and QR-stamp an invoice described by a JSON file."""
    try:
        payload = json.loads(_read(invoice_file))
    except json.JSONDecodeError as e:
        raise click.ClickException(f"{invoice_file} is not valid JSON: {e}")
    if not isinstance(payload, dict):
        raise click.ClickException(f"{invoice_file} must contain a JSON object")

    dumper = DebugDumper(settings.debug_path, settings.debug_enabled)
    try:
        invoice = Invoice.from_dict(payload, default_seller=settings.seller, currency=settings.currency)
        invoice = invoice.with_chain(icv, pih)
        xml = UblInvoiceBuilder(home_country=settings.home_country).build(invoice)
        dumper.unsigned(invoice.invoice_number, xml)
        signed = InvoiceSigner().sign(xml, _read(key_file), _read(cert_file))
        invoice.assign_hash(signed.invoice_hash)
        qr = build_qr(invoice, signed.signature_value, signed.certificate)
        final_xml = inject_qr(signed.xml, qr)
    except EInvoiceError as e:
        raise click.ClickException(e.message)
    dumper.signed(invoice.invoice_number, final_xml)
    dumper.qr(invoice.invoice_number, qr)
    dumper.invoice_hash(invoice.invoice_number, signed.invoice_hash)
    _write_or_echo(final_xml, out)


@click.command(name="decode-qr")
@click.argument("value")
def decode_qr(value):
    """Decode a base64 QR payload and report problems."""
    try:
        tags = describe_qr(value)
    except EInvoiceError as e:
        raise click.ClickException(e.message)
    for name, tag_value in tags.items():
        click.echo(f"{name}: {tag_value}")
    for problem in validate_qr(value):
        click.echo(f"problem: {problem}", err=True)


@click.command(name="qr-image")
@click.argument("value")
@click.option("--out", default=os.path.join(current_dir, "qr.png"), help="PNG output file")
def qr_image(value, out):
    """Render a QR payload as a PNG image."""
    with open(out, "wb") as f:
        f.write(render_qr_png(value))
    click.echo(f"Written to {out}")


cli.add_command(hash_command)
cli.add_command(verify)
cli.add_command(sign)
cli.add_command(generate)
cli.add_command(decode_qr)
cli.add_command(qr_image)

if __name__ == "__main__":
    cli()
