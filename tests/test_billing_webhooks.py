from datetime import datetime, timedelta

from conftest import post_event
from tokenledger.extensions import db
from tokenledger.models import BillingCustomer, BillingEventLog, LedgerEntry, Subscription
from tokenledger.billing import ledger


def _ts(minutes_from_now=30):
    return int((datetime.utcnow() + timedelta(minutes=minutes_from_now)).timestamp())


def _subscription(sub_id="sub_1", customer="cus_1", status="active", price="price_beta", **extra):
    snap = {
        "id": sub_id,
        "status": status,
        "customer": customer,
        "metadata": {},
        "current_period_end": _ts(60 * 24 * 30),
        "cancel_at_period_end": False,
        "items": {"data": [{"quantity": 1, "price": {"id": price, "product": "prod_x"}}]},
    }
    snap.update(extra)
    return snap


def _map_customer(app, uid, customer="cus_1"):
    with app.app_context():
        db.session.add(BillingCustomer(user_id=uid, stripe_customer_id=customer))
        db.session.commit()


def _invoice_event(event_id, invoice_id="in_1", sub_id="sub_1", customer="cus_1", type_="invoice.paid"):
    return {
        "id": event_id,
        "type": type_,
        "data": {"object": {"id": invoice_id, "customer": customer, "subscription": sub_id}},
    }


def test_invoice_paid_twice_grants_once(app, client, make_user, seed_catalog, fake_stripe):
    uid = make_user()
    _map_customer(app, uid)
    fake_stripe.subscriptions["sub_1"] = _subscription()

    assert post_event(client, _invoice_event("evt_1")).status_code == 200
    # Stripe may wrap the same invoice in a second event
    assert post_event(client, _invoice_event("evt_2", type_="invoice.payment_succeeded")).status_code == 200

    with app.app_context():
        grants = LedgerEntry.query.filter_by(user_id=uid, kind="monthly_grant").all()
        assert len(grants) == 1
        assert grants[0].delta == 100
        assert grants[0].external_id == "in_1"
        assert ledger.balance_of(uid) == 100

        sub = Subscription.query.filter_by(user_id=uid).one()
        assert sub.status == "active"
        assert sub.plan_id == "beta"
        assert sub.price_id == "price_beta"
        assert sub.current_period_end is not None


def test_redelivered_event_is_acknowledged_as_duplicate(app, client, make_user, seed_catalog, fake_stripe):
    uid = make_user()
    _map_customer(app, uid)
    fake_stripe.subscriptions["sub_1"] = _subscription()

    post_event(client, _invoice_event("evt_dup"))
    resp = post_event(client, _invoice_event("evt_dup"))
    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True, "duplicate": True}

    with app.app_context():
        assert LedgerEntry.query.filter_by(user_id=uid).count() == 1
        assert BillingEventLog.query.filter_by(stripe_event_id="evt_dup").count() == 1


def test_second_invoice_grants_again(app, client, make_user, seed_catalog, fake_stripe):
    uid = make_user()
    _map_customer(app, uid)
    fake_stripe.subscriptions["sub_1"] = _subscription()

    post_event(client, _invoice_event("evt_m1", invoice_id="in_jan"))
    post_event(client, _invoice_event("evt_m2", invoice_id="in_feb"))

    with app.app_context():
        assert ledger.balance_of(uid) == 200


def test_invoice_attributed_through_subscription_metadata(app, client, make_user, seed_catalog, fake_stripe):
    uid = make_user()
    fake_stripe.subscriptions["sub_meta"] = _subscription(
        sub_id="sub_meta", customer="cus_new", metadata={"user_id": str(uid)}
    )

    resp = post_event(client, _invoice_event("evt_meta", invoice_id="in_meta", sub_id="sub_meta", customer="cus_new"))
    assert resp.status_code == 200

    with app.app_context():
        assert ledger.balance_of(uid) == 100
        # mapping is recorded for later events
        assert BillingCustomer.query.filter_by(stripe_customer_id="cus_new").one().user_id == uid


def test_invoice_for_unknown_customer_grants_nothing(app, client, make_user, seed_catalog, fake_stripe):
    make_user()
    fake_stripe.subscriptions["sub_ghost"] = _subscription(sub_id="sub_ghost", customer="cus_ghost")

    resp = post_event(client, _invoice_event("evt_ghost", sub_id="sub_ghost", customer="cus_ghost"))
    assert resp.status_code == 200

    with app.app_context():
        assert LedgerEntry.query.count() == 0
        log = BillingEventLog.query.filter_by(stripe_event_id="evt_ghost").one()
        assert log.notes == "skipped:MissingCustomerMapping"
        assert log.processed_at is not None


def test_invoice_with_unmapped_price_projects_but_grants_nothing(app, client, make_user, seed_catalog, fake_stripe):
    uid = make_user()
    _map_customer(app, uid)
    fake_stripe.subscriptions["sub_1"] = _subscription(price="price_legacy")

    assert post_event(client, _invoice_event("evt_legacy")).status_code == 200

    with app.app_context():
        assert ledger.balance_of(uid) == 0
        sub = Subscription.query.filter_by(user_id=uid).one()
        assert sub.status == "active"
        assert sub.plan_id is None
        assert sub.price_id == "price_legacy"


def test_invoice_payment_failed_sets_past_due(app, client, make_user, seed_catalog, fake_stripe):
    uid = make_user()
    _map_customer(app, uid)
    with app.app_context():
        db.session.add(Subscription(user_id=uid, stripe_subscription_id="sub_1", status="active", plan_id="beta"))
        db.session.commit()
    # Stripe may still report active when the failure event arrives
    fake_stripe.subscriptions["sub_1"] = _subscription(status="active")

    resp = post_event(client, _invoice_event("evt_fail", type_="invoice.payment_failed"))
    assert resp.status_code == 200

    with app.app_context():
        sub = Subscription.query.filter_by(user_id=uid).one()
        assert sub.status == "past_due"
        assert LedgerEntry.query.count() == 0


def test_subscription_deleted_projects_canceled(app, client, make_user, seed_catalog, fake_stripe):
    uid = make_user()
    _map_customer(app, uid)
    fake_stripe.subscriptions["sub_1"] = _subscription(status="canceled")

    event = {"id": "evt_del", "type": "customer.subscription.deleted",
             "data": {"object": {"id": "sub_1", "customer": "cus_1"}}}
    assert post_event(client, event).status_code == 200

    with app.app_context():
        sub = Subscription.query.filter_by(user_id=uid).one()
        assert sub.status == "canceled"
        assert sub.stripe_subscription_id == "sub_1"


def test_subscription_events_in_any_order_converge(app, client, make_user, seed_catalog, fake_stripe):
    uid = make_user()
    fake_stripe.subscriptions["sub_1"] = _subscription(status="active", metadata={"user_id": str(uid)})

    updated = {"id": "evt_upd", "type": "customer.subscription.updated",
               "data": {"object": {"id": "sub_1", "customer": "cus_1", "metadata": {"user_id": str(uid)}}}}
    completed = {"id": "evt_cs", "type": "checkout.session.completed",
                 "data": {"object": {"id": "cs_sub", "mode": "subscription", "customer": "cus_1",
                                     "subscription": "sub_1", "client_reference_id": str(uid),
                                     "metadata": {"user_id": str(uid)}}}}

    # lifecycle event first, checkout completion second
    assert post_event(client, updated).status_code == 200
    assert post_event(client, completed).status_code == 200

    with app.app_context():
        sub = Subscription.query.filter_by(user_id=uid).one()
        assert sub.status == "active"
        assert sub.plan_id == "beta"
        assert BillingCustomer.query.filter_by(user_id=uid).one().stripe_customer_id == "cus_1"


def test_checkout_completed_then_subscription_created(app, client, make_user, seed_catalog, fake_stripe):
    uid = make_user()
    fake_stripe.subscriptions["sub_1"] = _subscription(status="trialing")

    completed = {"id": "evt_cs2", "type": "checkout.session.completed",
                 "data": {"object": {"id": "cs_sub2", "mode": "subscription", "customer": "cus_1",
                                     "subscription": "sub_1", "metadata": {"user_id": str(uid)}}}}
    assert post_event(client, completed).status_code == 200
    with app.app_context():
        assert Subscription.query.filter_by(user_id=uid).one().status == "incomplete"

    created = {"id": "evt_created", "type": "customer.subscription.created",
               "data": {"object": {"id": "sub_1", "customer": "cus_1"}}}
    assert post_event(client, created).status_code == 200
    with app.app_context():
        sub = Subscription.query.filter_by(user_id=uid).one()
        assert sub.status == "trialing"
        assert sub.is_active


def test_late_cancel_of_old_subscription_keeps_new_one(app, client, make_user, seed_catalog, fake_stripe):
    uid = make_user()
    _map_customer(app, uid)
    fake_stripe.subscriptions["sub_old"] = _subscription(sub_id="sub_old", status="canceled")
    fake_stripe.subscriptions["sub_new"] = _subscription(sub_id="sub_new", status="active")

    created = {"id": "evt_new", "type": "customer.subscription.created",
               "data": {"object": {"id": "sub_new", "customer": "cus_1"}}}
    deleted = {"id": "evt_old_del", "type": "customer.subscription.deleted",
               "data": {"object": {"id": "sub_old", "customer": "cus_1"}}}
    assert post_event(client, created).status_code == 200
    assert post_event(client, deleted).status_code == 200

    with app.app_context():
        sub = Subscription.query.filter_by(user_id=uid).one()
        assert sub.stripe_subscription_id == "sub_new"
        assert sub.status == "active"
        assert sub.plan_id == "beta"
        assert BillingEventLog.query.filter_by(stripe_event_id="evt_old_del").one().processed_at is not None


def test_cancel_of_current_subscription_still_applies_after_switch(app, client, make_user, seed_catalog, fake_stripe):
    uid = make_user()
    _map_customer(app, uid)
    fake_stripe.subscriptions["sub_new"] = _subscription(sub_id="sub_new", status="active")
    post_event(client, {"id": "evt_a", "type": "customer.subscription.created",
                        "data": {"object": {"id": "sub_new", "customer": "cus_1"}}})

    fake_stripe.subscriptions["sub_new"] = _subscription(sub_id="sub_new", status="canceled")
    post_event(client, {"id": "evt_b", "type": "customer.subscription.deleted",
                        "data": {"object": {"id": "sub_new", "customer": "cus_1"}}})

    with app.app_context():
        assert Subscription.query.filter_by(user_id=uid).one().status == "canceled"


def test_redelivered_old_checkout_does_not_unlink_live_subscription(app, client, make_user, seed_catalog, fake_stripe):
    uid = make_user()
    _map_customer(app, uid)
    fake_stripe.subscriptions["sub_new"] = _subscription(sub_id="sub_new", status="active")
    post_event(client, {"id": "evt_live", "type": "customer.subscription.created",
                        "data": {"object": {"id": "sub_new", "customer": "cus_1"}}})

    old_checkout = {"id": "evt_cs_old", "type": "checkout.session.completed",
                    "data": {"object": {"id": "cs_old", "mode": "subscription", "customer": "cus_1",
                                        "subscription": "sub_old", "metadata": {"user_id": str(uid)}}}}
    assert post_event(client, old_checkout).status_code == 200

    with app.app_context():
        sub = Subscription.query.filter_by(user_id=uid).one()
        assert sub.stripe_subscription_id == "sub_new"
        assert sub.status == "active"
        assert sub.plan_id == "beta"


def _topup_event(event_id, session_id="cs_top", payment_status="paid", customer="cus_1",
                 type_="checkout.session.completed", metadata=None):
    return {
        "id": event_id,
        "type": type_,
        "data": {"object": {"id": session_id, "mode": "payment", "customer": customer,
                            "payment_status": payment_status,
                            "metadata": metadata or {"kind": "topup"}}},
    }


def test_paid_topup_grants_pack_tokens_once(app, client, make_user, seed_catalog, fake_stripe):
    uid = make_user()
    _map_customer(app, uid)
    fake_stripe.line_items["cs_top"] = [{"price": {"id": "price_pack_50"}, "quantity": 2}]

    assert post_event(client, _topup_event("evt_top1")).status_code == 200
    assert post_event(client, _topup_event("evt_top2", type_="checkout.session.async_payment_succeeded")).status_code == 200

    with app.app_context():
        entries = LedgerEntry.query.filter_by(user_id=uid, kind="topup").all()
        assert [(e.delta, e.external_id) for e in entries] == [(100, "cs_top")]


def test_inactive_pack_is_still_honoured(app, client, make_user, seed_catalog, fake_stripe):
    uid = make_user()
    _map_customer(app, uid)
    fake_stripe.line_items["cs_old"] = [{"price": {"id": "price_pack_old"}, "quantity": 1}]

    assert post_event(client, _topup_event("evt_old", session_id="cs_old")).status_code == 200
    with app.app_context():
        assert ledger.balance_of(uid) == 20


def test_unmapped_topup_price_grants_nothing(app, client, make_user, seed_catalog, fake_stripe):
    uid = make_user()
    _map_customer(app, uid)
    fake_stripe.line_items["cs_bad"] = [{"price": {"id": "price_mystery"}, "quantity": 1}]

    resp = post_event(client, _topup_event("evt_bad", session_id="cs_bad"))
    assert resp.status_code == 200

    with app.app_context():
        assert LedgerEntry.query.count() == 0
        log = BillingEventLog.query.filter_by(stripe_event_id="evt_bad").one()
        assert log.notes == "skipped:UnknownPriceMapping"


def test_unpaid_topup_waits_for_async_success(app, client, make_user, seed_catalog, fake_stripe):
    uid = make_user()
    fake_stripe.line_items["cs_async"] = [{"price": {"id": "price_pack_50"}, "quantity": 1}]
    meta = {"kind": "topup", "user_id": str(uid)}

    post_event(client, _topup_event("evt_async1", session_id="cs_async", payment_status="unpaid",
                                    customer="cus_async", metadata=meta))
    with app.app_context():
        assert ledger.balance_of(uid) == 0

    post_event(client, _topup_event("evt_async2", session_id="cs_async", customer="cus_async", metadata=meta,
                                    type_="checkout.session.async_payment_succeeded"))
    with app.app_context():
        assert ledger.balance_of(uid) == 50


def test_handler_failure_returns_500_and_is_retried(app, client, make_user, seed_catalog, fake_stripe):
    uid = make_user()
    _map_customer(app, uid)
    # sub_1 unknown to the fake -> KeyError inside the handler

    resp = post_event(client, _invoice_event("evt_retry"))
    assert resp.status_code == 500
    with app.app_context():
        log = BillingEventLog.query.filter_by(stripe_event_id="evt_retry").one()
        assert log.processed_at is None
        assert log.notes == "handler_error:KeyError"
        assert LedgerEntry.query.count() == 0

    fake_stripe.subscriptions["sub_1"] = _subscription()
    resp = post_event(client, _invoice_event("evt_retry"))
    assert resp.status_code == 200
    with app.app_context():
        log = BillingEventLog.query.filter_by(stripe_event_id="evt_retry").one()
        assert log.processed_at is not None
        assert log.retries == 1
        assert ledger.balance_of(uid) == 100


def test_unknown_event_type_is_ignored(app, client, fake_stripe):
    resp = post_event(client, {"id": "evt_misc", "type": "customer.created", "data": {"object": {}}})
    assert resp.status_code == 200
    with app.app_context():
        assert BillingEventLog.query.filter_by(stripe_event_id="evt_misc").one().notes == "ignored"


def test_malformed_event_is_rejected(app, client, fake_stripe):
    resp = post_event(client, {"type": "invoice.paid"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "malformed_event"


def test_bad_signature_is_rejected_and_logged(app, client):
    resp = client.post(
        "/webhooks/stripe",
        data=b'{"id": "evt_forged", "type": "invoice.paid"}',
        headers={"Stripe-Signature": "t=1,v1=deadbeef"},
    )
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "invalid_signature"

    with app.app_context():
        log = BillingEventLog.query.filter_by(signature_valid=False).one()
        assert log.stripe_event_id.startswith("invalid:")
        assert LedgerEntry.query.count() == 0


def test_concurrent_first_delivery_asks_for_retry(app, client, fake_stripe, monkeypatch):
    from tokenledger.blueprints.webhooks import routes as webhook_routes

    event = {"id": "evt_race", "type": "customer.created", "data": {"object": {}}}
    # another worker inserted the row between our lookup and our insert
    with app.app_context():
        db.session.add(BillingEventLog(stripe_event_id="evt_race", type="customer.created",
                                       signature_valid=True, payload=event))
        db.session.commit()

    real_find = webhook_routes._find_log
    lookups = []

    def _miss_first(ev_id):
        lookups.append(ev_id)
        return None if len(lookups) == 1 else real_find(ev_id)
    monkeypatch.setattr(webhook_routes, "_find_log", _miss_first)

    resp = post_event(client, event)
    assert resp.status_code == 500
    assert resp.get_json() == {"error": "event_in_progress"}

    retry = post_event(client, event)
    assert retry.status_code == 200
    with app.app_context():
        log = BillingEventLog.query.filter_by(stripe_event_id="evt_race").one()
        assert log.processed_at is not None
        assert log.notes == "ignored"
        assert log.retries == 1
