# Overview: Flask CLI command group for bootstrap, ledger inspection, and maintenance.

# backend/settlement/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Use: python -m flask --app settlement <group> <command> [options]
#
# - python -m flask --app settlement settlement init-db [--seed-methods]
#   Create all tables; optionally seed the default payment methods.
# - python -m flask --app settlement settlement verify-ledger
#   Compare every customer's stored balance against SUM(ledger). Exit 1 on mismatch.
# - python -m flask --app settlement settlement mark-overdue
#   Move unpaid invoices past their due date to Overdue.
# - python -m flask --app settlement settlement stress-last-unit
#   Two threads buy the last unit of a product at once; exactly one must win.
#   Needs a file-backed database (threads do not share :memory:).

import threading
import uuid

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import PaymentMethod, Product
from .services import inventory_service, ledger_service, sales_service
from .validation import SettlementError


@click.group('settlement')
def settlement_group():
    """Settlement engine bootstrap and maintenance commands."""


@settlement_group.command('init-db')
@click.option('--seed-methods', is_flag=True, help='Seed DEFAULT_PAYMENT_METHODS if missing')
@with_appcontext
def init_db(seed_methods):
    """Create tables (idempotent)."""
    db.create_all()
    click.echo("PASS Tables created")

    if not seed_methods:
        return
    created = 0
    for index, name in enumerate(current_app.config["DEFAULT_PAYMENT_METHODS"]):
        if db.session.query(PaymentMethod).filter_by(name=name).first():
            continue
        db.session.add(PaymentMethod(name=name, is_active=True, sort_order=index))
        created += 1
    db.session.commit()
    click.echo(f"PASS Seeded {created} payment method(s)")


@settlement_group.command('verify-ledger')
@with_appcontext
def verify_ledger():
    """Check balance == SUM(ledger) for every customer."""
    mismatches = ledger_service.verify_all_balances()
    if not mismatches:
        click.echo("PASS Every customer balance matches its ledger")
        return
    for row in mismatches:
        click.echo(
            f"FAIL Customer {row['customer_id']} ({row['name']}): "
            f"balance={row['balance_cents']} ledger={row['ledger_cents']}"
        )
    raise SystemExit(1)


@settlement_group.command('mark-overdue')
@with_appcontext
def mark_overdue():
    """Move past-due unpaid invoices to Overdue."""
    count = sales_service.mark_overdue_invoices()
    click.echo(f"PASS Marked {count} invoice(s) overdue")


@settlement_group.command('stress-last-unit')
@click.option('--threads', 'thread_count', default=2, show_default=True, help='Concurrent buyers')
@with_appcontext
def stress_last_unit(thread_count):
    """Race concurrent checkouts for a single unit of stock."""
    if db.engine.url.database in (None, "", ":memory:"):
        click.echo("FAIL stress-last-unit needs a file-backed database")
        raise SystemExit(1)
    if not sales_service.get_configured_payment_methods():
        click.echo("FAIL No payment methods configured (run init-db --seed-methods)")
        raise SystemExit(1)

    app = current_app._get_current_object()
    suffix = uuid.uuid4().hex[:8]
    product = Product(sku=f"STRESS-{suffix}", name=f"Stress Unit {suffix}", price_cents=1000, is_active=True)
    db.session.add(product)
    db.session.commit()
    product_id = product.id
    inventory_service.receive_stock(product_id, 1, note="stress-last-unit seed")
    customer_ids = [
        ledger_service.create_customer(f"Stress Buyer {suffix}-{n}").id
        for n in range(thread_count)
    ]

    results = []
    lock = threading.Lock()
    barrier = threading.Barrier(thread_count)

    def worker(customer_id):
        with app.app_context():
            try:
                try:
                    product_row = db.session.get(Product, product_id)
                    draft = sales_service.open_checkout(
                        customer_id, [sales_service.line_from_product(product_row, 1)],
                    )
                except SettlementError:
                    barrier.abort()
                    raise
                barrier.wait(timeout=10)
                invoice = sales_service.commit_sale(draft)
                with lock:
                    results.append(("committed", invoice.document_number))
            except SettlementError as exc:
                with lock:
                    results.append(("refused", exc.message))
            except threading.BrokenBarrierError:
                with lock:
                    results.append(("aborted", "another worker failed before the race started"))
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(cid,)) for cid in customer_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    committed = [r for r in results if r[0] == "committed"]
    for outcome, detail in results:
        click.echo(f"  {outcome}: {detail}")
    on_hand = inventory_service.get_quantity_on_hand(product_id)
    click.echo(f"On hand after race: {on_hand}")

    if len(committed) == 1 and on_hand == 0:
        click.echo("PASS Exactly one checkout won the last unit")
        return
    click.echo(f"FAIL {len(committed)} checkout(s) committed")
    raise SystemExit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(settlement_group)
