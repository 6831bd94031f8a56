import click
from flask.cli import with_appcontext

from tokenledger.billing import ledger
from tokenledger.extensions import db
from tokenledger.models import Plan, TokenTopup, User


@click.group()
def catalog():
    """Plan and top-up catalog provisioning."""


@catalog.command("add-plan")
@click.option("--id", "plan_id", required=True, help="Plan slug, e.g. beta")
@click.option("--price-id", required=True, help="Stripe recurring price id")
@click.option("--tokens", type=click.IntRange(min=1), required=True, help="Tokens granted per paid invoice")
@click.option("--name", default=None)
@with_appcontext
def catalog_add_plan(plan_id, price_id, tokens, name):
    if db.session.get(Plan, plan_id):
        raise click.ClickException(f"Plan {plan_id!r} already exists")
    if db.session.query(Plan).filter_by(stripe_price_id=price_id).count():
        raise click.ClickException(f"Price {price_id!r} is already mapped to a plan")
    if db.session.get(TokenTopup, price_id):
        raise click.ClickException(f"Price {price_id!r} is already mapped to a top-up")

    db.session.add(Plan(id=plan_id, name=name, stripe_price_id=price_id, monthly_tokens=tokens, is_active=True))
    db.session.commit()
    click.echo(f"Plan created id={plan_id} price={price_id} monthly_tokens={tokens}")


@catalog.command("add-topup")
@click.option("--price-id", required=True, help="Stripe one-time price id")
@click.option("--tokens", type=click.IntRange(min=1), required=True)
@click.option("--name", default=None)
@with_appcontext
def catalog_add_topup(price_id, tokens, name):
    if db.session.get(TokenTopup, price_id):
        raise click.ClickException(f"Top-up {price_id!r} already exists")
    if db.session.query(Plan).filter_by(stripe_price_id=price_id).count():
        raise click.ClickException(f"Price {price_id!r} is already mapped to a plan")

    db.session.add(TokenTopup(stripe_price_id=price_id, name=name, tokens=tokens, is_active=True))
    db.session.commit()
    click.echo(f"Top-up created price={price_id} tokens={tokens}")


@catalog.command("deactivate-topup")
@click.option("--price-id", required=True)
@with_appcontext
def catalog_deactivate_topup(price_id):
    pack = db.session.get(TokenTopup, price_id)
    if not pack:
        raise click.ClickException(f"Top-up {price_id!r} not found")
    pack.is_active = False
    db.session.commit()
    click.echo(f"Top-up {price_id} deactivated (paid sessions are still honoured)")


@catalog.command("list")
@with_appcontext
def catalog_list():
    for plan in db.session.query(Plan).order_by(Plan.id):
        state = "active" if plan.is_active else "inactive"
        click.echo(f"plan  {plan.id:<12} {plan.stripe_price_id:<32} {plan.monthly_tokens:>6} tokens/month  {state}")
    for pack in db.session.query(TokenTopup).order_by(TokenTopup.tokens):
        state = "active" if pack.is_active else "inactive"
        click.echo(f"topup {'':<12} {pack.stripe_price_id:<32} {pack.tokens:>6} tokens        {state}")


@click.group()
def users():
    """User management."""


@users.command("create")
@click.option("--email", required=True)
@click.option("--password", required=True)
@with_appcontext
def users_create(email, password):
    email = email.strip().lower()
    if db.session.query(User).filter_by(email=email).count():
        raise click.ClickException("User already exists")

    user = User(email=email, is_active=True)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()

    click.echo(f"User created id={user.id} email={user.email}")


@click.group("ledger")
def ledger_group():
    """Token ledger inspection (read-only)."""


def _require_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if not user:
        raise click.ClickException(f"User id {user_id} not found")
    return user


@ledger_group.command("balance")
@click.option("--user-id", type=int, required=True)
@with_appcontext
def ledger_balance(user_id):
    _require_user(user_id)
    click.echo(f"user_id={user_id} balance={ledger.balance_of(user_id)}")


@ledger_group.command("entries")
@click.option("--user-id", type=int, required=True)
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=30)
@with_appcontext
def ledger_entries(user_id, limit):
    _require_user(user_id)
    for entry in ledger.recent_entries(user_id, limit=limit):
        click.echo(f"{entry.created_at:%Y-%m-%d %H:%M:%S}  {entry.kind:<13} {entry.delta:+6d}  {entry.external_id}  {entry.reason or ''}")


def register_cli(app):
    app.cli.add_command(catalog)
    app.cli.add_command(users)
    app.cli.add_command(ledger_group)
