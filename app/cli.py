import os
import click
from flask import current_app
from flask.cli import with_appcontext
from flask_migrate import upgrade as alembic_upgrade

from models.order import Order
from app.services.payment_gateway import PaymentGatewayError, get_payment_gateway
from app.services.webhook_service import apply_gateway_status


def _assert_safe_for_upgrade():
    # Prevent accidental prod upgrades unless explicitly allowed
    env = (current_app.config.get("ENV_NAME") or "").lower()
    app_env = (os.getenv("APP_ENV") or "").lower()
    if app_env == "production" or env == "production":
        if (os.getenv("ALLOW_DB_MIGRATIONS") or "").lower() not in ("1", "true", "yes"):
            raise click.ClickException("Refusing to run DB migration in production without ALLOW_DB_MIGRATIONS=true")


@click.command("db-upgrade-safe")
@with_appcontext
def db_upgrade_safe():
    """Apply migrations to the configured database."""
    _assert_safe_for_upgrade()
    alembic_upgrade()
    click.echo("Database upgraded.")


@click.command("payments-reconcile")
@click.argument("order_number")
@with_appcontext
def payments_reconcile(order_number):
    """Re-read an order's payment from the gateway and apply its status."""
    order = Order.query.filter_by(order_number=order_number).first()
    if not order:
        raise click.ClickException(f"Order {order_number} not found")
    if not order.gateway_payment_id:
        raise click.ClickException(f"Order {order_number} has no gateway payment id")
    try:
        payment = get_payment_gateway().get_payment(order.gateway_payment_id)
    except PaymentGatewayError as e:
        raise click.ClickException(f"Gateway lookup failed: {e}")
    if apply_gateway_status(order, payment, source="cli"):
        click.echo(f"Order {order_number} updated: {order.status}/{order.payment_status}")
    else:
        click.echo(f"Order {order_number} unchanged: {order.status}/{order.payment_status}")


def register_cli(app):
    app.cli.add_command(db_upgrade_safe)
    app.cli.add_command(payments_reconcile)
