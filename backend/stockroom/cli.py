# Overview: Flask CLI command groups for bootstrap, inspection, and ledger maintenance.

# backend/stockroom/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create any missing tables (idempotent). Use "flask db upgrade" for migrations.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Reference data:
# - python -m flask products add --sku WID-1 --name "Widget" --price-cents 1299
# - python -m flask products list
#
# Stock ledger:
# - python -m flask stock show 1 [--as-of 2025-01-31T23:59:59Z] [--movements 20]
#   Current on-hand (ledger fold) plus the balance view and recent movements.
# - python -m flask stock receive 1 10 --reason "Initial count"
#   Post an INCOMING movement.
# - python -m flask stock adjust 1 7 --reason "Cycle count"
#   Post one ADJUSTMENT so on-hand becomes 7.
# - python -m flask stock verify
#   Compare every product's ledger fold with the stock_balances view.
#
# Orders:
# - python -m flask orders timeline <order_uuid>
# - python -m flask orders transition <order_uuid> Packed [--expected Confirmed] [--notes "..."]

import click
from flask.cli import with_appcontext

from .errors import StockroomError
from .extensions import db
from .models import Product
from .models.inventory import MOVEMENT_INCOMING
from .services import event_log_service, ledger_service
from .services import order_workflow_service as workflow


def _fail(e: StockroomError):
    raise click.ClickException(f"{e.code}: {e.message}")


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the append-only ledgers!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('products')
def products_group():
    """Product reference data."""


@products_group.command('add')
@click.option('--sku', required=True)
@click.option('--name', required=True)
@click.option('--price-cents', type=int, default=None)
@with_appcontext
def add_product(sku, name, price_cents):
    if db.session.query(Product).filter_by(sku=sku).first():
        raise click.ClickException(f"SKU {sku} already exists")
    product = Product(sku=sku, name=name, price_cents=price_cents, is_active=True)
    db.session.add(product)
    db.session.commit()
    click.echo(f"PASS Created product {product.id} ({product.sku})")


@products_group.command('list')
@with_appcontext
def list_products():
    products = db.session.query(Product).order_by(Product.id).all()
    if not products:
        click.echo("No products.")
        return
    for p in products:
        state = "active" if p.is_active else "inactive"
        click.echo(f"{p.id:>5}  {p.sku:<20} {p.name:<30} {state}")


@click.group('stock')
def stock_group():
    """Stock ledger inspection and postings."""


@stock_group.command('show')
@click.argument('product_id', type=int)
@click.option('--as-of', default=None, help='ISO-8601 cutoff (inclusive)')
@click.option('--movements', 'movement_limit', type=int, default=10, show_default=True)
@with_appcontext
def show_stock(product_id, as_of, movement_limit):
    try:
        if as_of:
            on_hand = ledger_service.stock_as_of(product_id, as_of)
        else:
            on_hand = ledger_service.current_stock(product_id)
        view = ledger_service.balance_view(product_id)
        movements = ledger_service.list_movements(product_id=product_id, limit=movement_limit)
    except StockroomError as e:
        _fail(e)

    product = ledger_service.get_product(product_id)
    click.echo(f"Product {product.id} ({product.sku}) {product.name}")
    click.echo(f"  on hand (ledger): {on_hand}" + (f" as of {as_of}" if as_of else ""))
    click.echo(f"  balance view:     {view}")
    for m in movements:
        click.echo(
            f"  #{m.id:<6} {m.occurred_at:%Y-%m-%d %H:%M:%S} {m.movement_type:<10} "
            f"{m.delta:>+6}  {m.reason or ''} {('ref=' + m.reference) if m.reference else ''}"
        )


@stock_group.command('receive')
@click.argument('product_id', type=int)
@click.argument('quantity', type=int)
@click.option('--reason', default='Manual receipt')
@click.option('--reference', default=None)
@click.option('--actor', default='cli')
@with_appcontext
def receive_stock(product_id, quantity, reason, reference, actor):
    try:
        movement = ledger_service.record_movement(
            product_id=product_id,
            movement_type=MOVEMENT_INCOMING,
            quantity=quantity,
            reason=reason,
            reference=reference,
            actor=actor,
        )
    except StockroomError as e:
        _fail(e)
    click.echo(f"PASS Movement {movement.id}: +{quantity}, on hand {ledger_service.current_stock(product_id)}")


@stock_group.command('adjust')
@click.argument('product_id', type=int)
@click.argument('target', type=int)
@click.option('--reason', required=True)
@click.option('--actor', default='cli')
@with_appcontext
def adjust_stock(product_id, target, reason, actor):
    try:
        movement = ledger_service.adjust_stock(
            product_id=product_id,
            target_balance=target,
            reason=reason,
            actor=actor,
        )
    except StockroomError as e:
        _fail(e)
    click.echo(f"PASS Movement {movement.id}: adjustment {movement.quantity:+d}, on hand {target}")


@stock_group.command('verify')
@with_appcontext
def verify_stock():
    """Exit non-zero when the balance view disagrees with the ledger."""
    mismatches = ledger_service.verify_balances()
    if not mismatches:
        click.echo("PASS Balance view matches the ledger.")
        return
    for m in mismatches:
        click.echo(f"FAIL product {m['product_id']}: ledger {m['ledger']}, view {m['balance_view']}")
    raise SystemExit(1)


@click.group('orders')
def orders_group():
    """Order lifecycle inspection and manual transitions."""


@orders_group.command('timeline')
@click.argument('order_uuid')
@with_appcontext
def order_timeline(order_uuid):
    try:
        order = workflow.get_order(order_uuid)
        events = event_log_service.order_timeline(order_uuid)
        stats = event_log_service.timeline_stats(order_uuid)
    except StockroomError as e:
        _fail(e)

    click.echo(f"Order {order.order_number} ({order.uuid}) status={order.status}")
    click.echo(
        f"  events={stats['total_events']} status_changes={stats['status_changes']} "
        f"emails={stats['emails_sent']} tickets={stats['support_tickets']}"
    )
    for e in events:
        click.echo(f"  [{e.sequence:>3}] {e.created_at:%Y-%m-%d %H:%M:%S} {e.event_type:<18} {e.title or ''}")


@orders_group.command('transition')
@click.argument('order_uuid')
@click.argument('target_status')
@click.option('--expected', 'expected_status', default=None, help='Fail unless the order is in this status')
@click.option('--notes', default=None)
@click.option('--idempotency-key', default=None)
@click.option('--actor', default='cli')
@with_appcontext
def transition(order_uuid, target_status, expected_status, notes, idempotency_key, actor):
    """Manual transitions (Confirmed -> Packed, Packed -> Delivery, ...)."""
    try:
        result = workflow.transition_order(
            order_uuid,
            target_status,
            actor=actor,
            notes=notes,
            expected_status=expected_status,
            idempotency_key=idempotency_key,
        )
    except StockroomError as e:
        _fail(e)
    suffix = " (replayed)" if result.replayed else ""
    click.echo(f"PASS Order {result.order.order_number} is now {result.order.status}{suffix}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(products_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(orders_group)
