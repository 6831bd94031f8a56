from tokenledger.extensions import db
from tokenledger.billing import ledger
from tokenledger.models import Plan, TokenTopup, User


def test_catalog_add_plan_and_topup(app):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["catalog", "add-plan", "--id", "beta", "--price-id", "price_beta", "--tokens", "100"])
    assert result.exit_code == 0, result.output
    result = runner.invoke(args=["catalog", "add-topup", "--price-id", "price_pack_50", "--tokens", "50"])
    assert result.exit_code == 0, result.output

    with app.app_context():
        assert db.session.get(Plan, "beta").monthly_tokens == 100
        assert db.session.get(TokenTopup, "price_pack_50").tokens == 50

    listing = runner.invoke(args=["catalog", "list"])
    assert "price_beta" in listing.output
    assert "price_pack_50" in listing.output


def test_catalog_rejects_price_reuse(app):
    runner = app.test_cli_runner()
    runner.invoke(args=["catalog", "add-plan", "--id", "beta", "--price-id", "price_beta", "--tokens", "100"])

    dup = runner.invoke(args=["catalog", "add-topup", "--price-id", "price_beta", "--tokens", "5"])
    assert dup.exit_code != 0
    assert "already mapped" in dup.output

    bad = runner.invoke(args=["catalog", "add-plan", "--id", "zero", "--price-id", "price_zero", "--tokens", "0"])
    assert bad.exit_code != 0


def test_deactivate_topup(app):
    runner = app.test_cli_runner()
    runner.invoke(args=["catalog", "add-topup", "--price-id", "price_pack", "--tokens", "10"])
    result = runner.invoke(args=["catalog", "deactivate-topup", "--price-id", "price_pack"])
    assert result.exit_code == 0
    with app.app_context():
        assert db.session.get(TokenTopup, "price_pack").is_active is False


def test_users_create_and_ledger_commands(app):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["users", "create", "--email", "Ops@Example.com", "--password", "pw"])
    assert result.exit_code == 0, result.output

    with app.app_context():
        user = User.query.filter_by(email="ops@example.com").one()
        uid = user.id
        ledger.append(uid, 25, "topup", "cs_cli")

    balance = runner.invoke(args=["ledger", "balance", "--user-id", str(uid)])
    assert f"user_id={uid} balance=25" in balance.output

    entries = runner.invoke(args=["ledger", "entries", "--user-id", str(uid)])
    assert "topup" in entries.output
    assert "cs_cli" in entries.output

    missing = runner.invoke(args=["ledger", "balance", "--user-id", "99999"])
    assert missing.exit_code != 0
