# Overview: Flask CLI command group for schema bootstrap, ledger reconciliation and demo data.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask ledger <command> [options]
#
# - python -m flask ledger init-db [--reset --yes]
#   Create all tables (use migrations for real deployments: python -m flask db upgrade).
# - python -m flask ledger verify [--product-id 3]
#   Reconcile current_stock against the ledger; exits 1 on any mismatch.
# - python -m flask ledger seed-demo
#   Create one supplier and two products with opening stock.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Supplier
from .services import products_service, stock_service
from .services.errors import ProductNotFoundError

DEMO_ACTOR_ID = 1


@click.group('ledger')
def ledger_group():
    """Stock ledger maintenance commands."""


@ledger_group.command('init-db')
@click.option('--reset', is_flag=True, help='Drop all tables first')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def init_db(reset, yes):
    """Create the schema (optionally dropping it first)."""
    if reset:
        if not yes:
            click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)
        click.echo("DELETE  Dropping all tables...")
        db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()
    click.echo("PASS Database ready.")


@ledger_group.command('verify')
@click.option('--product-id', type=int, default=None, help='Check a single product')
@with_appcontext
def verify_ledger(product_id):
    """
    Reconcile every product's current_stock against its ledger.

    Exit code 1 when any product disagrees with its ledger or the ledger
    chain is broken.
    """
    if product_id is not None:
        try:
            reports = [stock_service.verify_product_ledger(product_id)]
        except ProductNotFoundError as e:
            raise click.ClickException(str(e))
    else:
        result = stock_service.verify_all_ledgers()
        click.echo(f"Checked {result['products_checked']} product(s)")
        reports = result["mismatches"]

    failed = [r for r in reports if not r["ok"]]
    for report in reports:
        marker = "PASS" if report["ok"] else "FAIL"
        click.echo(
            f"{marker} product={report['product_id']} sku={report['sku']} "
            f"stock={report['current_stock']} ledger={report['ledger_total']} "
            f"entries={report['entry_count']} chain_breaks={len(report['chain_breaks'])}"
        )

    if failed:
        click.echo(f"FAIL {len(failed)} product(s) out of balance", err=True)
        raise SystemExit(1)

    click.echo("PASS Ledger balanced.")


@ledger_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Create a demo supplier and two products with opening stock (idempotent)."""
    supplier = db.session.query(Supplier).filter_by(code="DEMO").first()
    if supplier is None:
        supplier = Supplier(name="Demo Supplies", code="DEMO", contact_person="Demo Contact")
        db.session.add(supplier)
        db.session.commit()
        click.echo(f"PASS Created supplier: {supplier.name} (ID: {supplier.id})")
    else:
        click.echo(f"PASS Using existing supplier: {supplier.name} (ID: {supplier.id})")

    demo_products = [
        {
            "sku": "DEMO-RICE-5KG",
            "name": "Basmati Rice 5kg",
            "unit": "pack",
            "cost_price_cents": 42000,
            "selling_price_cents": 52000,
            "tax_rate_bps": 500,
            "initial_stock": 40,
        },
        {
            "sku": "DEMO-OIL-1L",
            "name": "Sunflower Oil 1L",
            "unit": "liter",
            "cost_price_cents": 13500,
            "selling_price_cents": 16000,
            "tax_rate_bps": 1800,
            "initial_stock": 60,
        },
    ]

    for data in demo_products:
        try:
            existing = products_service.get_product_by_sku(data["sku"])
            click.echo(f"PASS Product exists: {existing.sku} (stock {existing.current_stock})")
            continue
        except ProductNotFoundError:
            pass

        product = products_service.create_product(
            payload={**data, "supplier_id": supplier.id},
            actor_user_id=DEMO_ACTOR_ID,
        )
        click.echo(f"PASS Created product: {product.sku} (stock {product.current_stock})")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(ledger_group)
