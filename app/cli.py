"""
CLI entry point for the coupon engine.

Usage:
    python -m app.cli init-db --seed
    python -m app.cli list-coupons
    python -m app.cli evaluate --code SAVE20 --cart cart.json
    python -m app.cli evaluate --code FIXED50 --existing SAVE20 --cart cart.json
"""

import json
import logging
import os
import sys

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.coupon_engine import CouponRepository, CouponService, get_config, get_time_service
from app.coupon_engine.fixtures import DEMO_CART, demo_coupons
from app.coupon_engine.repository import DuplicateCouponError
from app.coupon_engine.schema import create_tables

load_dotenv()

# Setup logging
logging.basicConfig(
    level=logging.WARNING,
    format="%(message)s",
    handlers=[logging.StreamHandler()],
)
logger = logging.getLogger(__name__)

console = Console()


def open_session(database_url: str):
    engine = create_engine(database_url)
    return engine, sessionmaker(bind=engine)()


@click.group()
@click.option(
    "--database-url",
    envvar="DATABASE_URL",
    default="sqlite:///./data/coupons.db",
    show_default=True,
    help="SQLAlchemy database URL",
)
@click.pass_context
def cli(ctx, database_url: str):
    """Storefront coupon engine tools.

    Create the schema, inspect coupon definitions and price a cart offline.
    """
    ctx.ensure_object(dict)
    if database_url.startswith("sqlite:///"):
        directory = os.path.dirname(database_url[len("sqlite:///"):])
        if directory:
            os.makedirs(directory, exist_ok=True)
    ctx.obj["database_url"] = database_url


@cli.command("init-db")
@click.option("--seed", is_flag=True, help="Insert the demo coupons (SAVE20, FIXED50, BOGO50, ...)")
@click.pass_context
def init_db(ctx, seed: bool):
    """Create coupon tables."""
    engine, db = open_session(ctx.obj["database_url"])
    try:
        create_tables(engine)
        console.print("[green]Coupon tables ready.[/green]")
        if not seed:
            return

        repository = CouponRepository(db)
        for row in demo_coupons(get_time_service().now()):
            try:
                repository.create(row)
                console.print(f"  [cyan]+[/cyan] {row['code']}")
            except DuplicateCouponError:
                console.print(f"  [dim]= {row['code']} (exists)[/dim]")
    finally:
        db.close()


@cli.command("list-coupons")
@click.option("--status", type=click.Choice(["active", "inactive"]), help="Filter by activation")
@click.option("--limit", default=100, type=int, help="Max rows (default: 100)")
@click.pass_context
def list_coupons(ctx, status: str, limit: int):
    """Print coupon definitions."""
    _, db = open_session(ctx.obj["database_url"])
    try:
        coupons, total = CouponRepository(db).list(status=status, limit=limit)
    finally:
        db.close()

    table = Table(title=f"[bold cyan]Coupons ({total})[/bold cyan]", show_header=True, header_style="bold magenta")
    table.add_column("Code", style="cyan", no_wrap=True)
    table.add_column("Type", style="white")
    table.add_column("Value", justify="right", style="green")
    table.add_column("Min cart", justify="right")
    table.add_column("Stack", justify="center")
    table.add_column("Auto", justify="center")
    table.add_column("Active", justify="center")
    table.add_column("Expires", style="yellow")

    for coupon in coupons:
        table.add_row(
            coupon.code,
            coupon.discount_type.value,
            str(coupon.discount_value) if coupon.discount_value is not None else "-",
            str(coupon.min_cart_value) if coupon.min_cart_value is not None else "-",
            "yes" if coupon.stackable else "no",
            "yes" if coupon.auto_apply else "no",
            "[green]yes[/green]" if coupon.is_active else "[red]no[/red]",
            coupon.expires_at.strftime("%Y-%m-%d") if coupon.expires_at else "-",
        )
    console.print(table)


@cli.command()
@click.option("--code", "-c", required=True, help="Coupon code to apply")
@click.option("--cart", type=click.Path(exists=True), help="JSON file with cart lines (default: demo cart)")
@click.option("--existing", "-e", multiple=True, help="Codes already applied, in order")
@click.option("--currency", default=None, help="Currency code (default: DEFAULT_CURRENCY)")
@click.option("--locale", "-l", type=click.Choice(["en", "he"]), default="en")
@click.option("--user", "user_identifier", default=None, help="User identifier for per-user coupons")
@click.pass_context
def evaluate(ctx, code: str, cart: str, existing, currency: str, locale: str, user_identifier: str):
    """Price a coupon against a cart and print the discount breakdown."""
    if cart:
        with open(cart, encoding="utf-8") as f:
            cart_items = json.load(f)
    else:
        cart_items = DEMO_CART

    _, db = open_session(ctx.obj["database_url"])
    try:
        service = CouponService(CouponRepository(db), get_config(), get_time_service())
        outcome = service.apply(
            code,
            cart_items,
            currency=currency,
            locale=locale,
            user_identifier=user_identifier,
            existing_codes=list(existing),
        )
    finally:
        db.close()

    payload = outcome.to_dict()
    console.print()
    if not payload["success"]:
        console.print(f"[red]{payload['code']}:[/red] {payload['messages'].get(locale)}")
        sys.exit(1)

    coupon = payload["coupon"]
    console.print(f"[bold cyan]{coupon['code']}[/bold cyan] {coupon['discountLabel'].get(locale, '')}")
    console.print(f"[dim]Action: {payload['action']}  Applied: {', '.join(payload['appliedCodes'])}[/dim]")
    for warning in payload["warnings"]:
        console.print(f"[yellow]{warning}[/yellow]")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("SKU", style="cyan", no_wrap=True)
    table.add_column("Color")
    table.add_column("Size")
    table.add_column("Qty", justify="right")
    table.add_column("Unit", justify="right")
    table.add_column("Discount", justify="right", style="green")
    for item in payload["discountedItems"]:
        table.add_row(
            item["sku"],
            item["color"] or "-",
            item["size"] or "-",
            str(item["quantity"]),
            f"{item['unitPrice']:.2f}",
            f"{item['discountAmount']:.2f}",
        )
    console.print(table)
    console.print(
        f"Subtotal [bold]{payload['subtotal']:.2f}[/bold]  "
        f"Discount [green]{payload['discountAmount']:.2f}[/green]  "
        f"New subtotal [bold]{payload['newSubtotal']:.2f}[/bold]"
    )


if __name__ == "__main__":
    cli()
