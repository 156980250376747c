import hashlib
import hmac
import json
import time
from decimal import Decimal

from fastapi.testclient import TestClient

from app import create_app
from config import Settings
from memory_store import MemoryStore

SECRET = "whsec_test_secret"


def _make_client(secret=SECRET):
    """
    app wired to an in-memory store:
      R referred U, N has no referrer, business B with stripe account acct_B.
    """
    store = MemoryStore()
    store.add_user("R")
    store.add_user("U", referred_by="R")
    store.add_user("N")
    store.add_business("B", stripe_account_id="acct_B")
    app = create_app(settings=Settings(stripe_webhook_secret=secret), store=store)
    return TestClient(app), store


def _post_event(client, event_type, obj, secret=SECRET, event_id="evt_1"):
    payload = json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode("utf-8")
    timestamp = int(time.time())
    digest = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return client.post(
        "/api/webhook/stripe",
        content=payload,
        headers={
            "content-type": "application/json",
            "stripe-signature": f"t={timestamp},v1={digest}",
        },
    )


def _payment_intent(payment_id, amount, user_id="U", business_id="B"):
    return {
        "id": payment_id,
        "amount": amount,
        "metadata": {"businessId": business_id, "userId": user_id},
    }


def test_full_webhook_flow():
    """
    end-to-end:
      - U pays B 100.00 (pi_1)
      - the same payment is redelivered, then reported again via checkout.session.completed
      - only the first one moves money
    """
    client, store = _make_client()

    res = _post_event(client, "payment_intent.succeeded", _payment_intent("pi_1", 10000))
    assert res.status_code == 200
    data = res.json()
    assert data["received"] is True
    assert data["status"] == "processed"
    settlement = data["settlement"]
    assert settlement["status"] == "applied"
    assert settlement["transaction"]["cashback_earned"] == "5.00"
    assert settlement["transaction"]["referrer_id"] == "R"
    assert settlement["transaction"]["referral_reward"] == "1.00"
    assert settlement["splits"]["platform_fee"] == "10.00"

    res = _post_event(client, "payment_intent.succeeded", _payment_intent("pi_1", 10000), event_id="evt_2")
    assert res.status_code == 200
    assert res.json()["status"] == "already_processed"

    res = _post_event(
        client,
        "checkout.session.completed",
        {
            "id": "cs_1",
            "payment_intent": "pi_1",
            "amount_total": 10000,
            "payment_status": "paid",
            "metadata": {"businessId": "B", "userId": "U"},
        },
        event_id="evt_3",
    )
    assert res.status_code == 200
    assert res.json()["status"] == "already_processed"

    assert len(store.transactions) == 1
    assert store.wallets[("U", "B")].balance == Decimal("5.00")
    assert store.wallets[("R", "B")].balance_from_referrals == Decimal("1.00")


def test_checkout_session_first_then_payment_intent():
    client, store = _make_client()

    res = _post_event(
        client,
        "checkout.session.completed",
        {
            "id": "cs_9",
            "payment_intent": "pi_9",
            "amount_total": 5000,
            "payment_status": "paid",
            "metadata": {"businessId": "B", "userId": "N"},
        },
    )
    assert res.json()["status"] == "processed"

    res = _post_event(client, "payment_intent.succeeded", _payment_intent("pi_9", 5000, user_id="N"))
    assert res.json()["status"] == "already_processed"

    tx = store.transactions["pi_9"]
    assert tx.cashback_earned == Decimal("2.50")
    assert tx.referral_reward is None
    assert list(store.wallets) == [("N", "B")]


def test_unpaid_checkout_session_is_not_settled():
    """
    a completed-but-unpaid session (e.g. bank debit still clearing) moves no
    money; the payment intent settles once it actually succeeds.
    """
    client, store = _make_client()

    res = _post_event(
        client,
        "checkout.session.completed",
        {
            "id": "cs_5",
            "payment_intent": "pi_5",
            "amount_total": 5000,
            "payment_status": "unpaid",
            "metadata": {"businessId": "B", "userId": "U"},
        },
    )
    assert res.status_code == 200
    assert res.json()["status"] == "skipped"
    assert store.transactions == {}
    assert store.wallets == {}

    res = _post_event(client, "payment_intent.succeeded", _payment_intent("pi_5", 5000), event_id="evt_2")
    assert res.json()["status"] == "processed"
    assert store.wallets[("U", "B")].balance == Decimal("2.50")


def test_invalid_signature_returns_400():
    client, store = _make_client()

    res = _post_event(client, "payment_intent.succeeded", _payment_intent("pi_1", 10000), secret="whsec_other")

    assert res.status_code == 400
    assert store.transactions == {}


def test_missing_signature_header_returns_400():
    client, store = _make_client()

    res = client.post("/api/webhook/stripe", content=b"{}", headers={"content-type": "application/json"})

    assert res.status_code == 400
    assert "Stripe-Signature" in res.json()["detail"]


def test_missing_metadata_returns_400():
    client, store = _make_client()

    res = _post_event(client, "payment_intent.succeeded", {"id": "pi_1", "amount": 10000, "metadata": {}})

    assert res.status_code == 400
    assert "businessId" in res.json()["detail"]
    assert "userId" in res.json()["detail"]
    assert store.transactions == {}


def test_unknown_user_returns_400():
    client, store = _make_client()

    res = _post_event(client, "payment_intent.succeeded", _payment_intent("pi_1", 10000, user_id="ghost"))

    assert res.status_code == 400
    assert "ghost" in res.json()["detail"]
    assert store.wallets == {}


def test_storage_failure_returns_500_and_retry_succeeds(monkeypatch):
    client, store = _make_client()

    def boom(tx):
        raise RuntimeError("db down")

    monkeypatch.setattr(store, "insert_transaction", boom)
    res = _post_event(client, "payment_intent.succeeded", _payment_intent("pi_1", 10000))
    assert res.status_code == 500
    assert store.wallets == {}

    monkeypatch.undo()
    res = _post_event(client, "payment_intent.succeeded", _payment_intent("pi_1", 10000))
    assert res.status_code == 200
    assert res.json()["status"] == "processed"


def test_unhandled_event_type_is_acknowledged():
    client, store = _make_client()

    res = _post_event(client, "customer.created", {"id": "cus_1"})

    assert res.status_code == 200
    assert res.json() == {"received": True, "type": "customer.created", "status": "skipped"}


def test_account_updated_syncs_business():
    client, store = _make_client()

    res = _post_event(
        client,
        "account.updated",
        {"id": "acct_B", "details_submitted": True, "charges_enabled": True, "payouts_enabled": True},
    )

    assert res.status_code == 200
    assert res.json()["status"] == "processed"
    assert store.businesses["B"].details_submitted is True
    assert store.businesses["B"].payouts_enabled is True


def test_payment_failed_is_acknowledged_without_touching_ledger():
    """
    a failed payment never reached the ledger, so it is only logged.
    a failure report for an already settled payment changes nothing either.
    """
    client, store = _make_client()

    res = _post_event(client, "payment_intent.payment_failed", {"id": "pi_x", "metadata": {}})
    assert res.status_code == 200
    assert res.json()["status"] == "skipped"
    assert store.transactions == {}
    assert store.wallets == {}

    _post_event(client, "payment_intent.succeeded", _payment_intent("pi_1", 10000), event_id="evt_2")
    res = _post_event(client, "payment_intent.payment_failed", {"id": "pi_1", "metadata": {}}, event_id="evt_3")
    assert res.status_code == 200
    assert res.json()["status"] == "skipped"
    assert store.transactions["pi_1"].status == "completed"
    assert store.wallets[("U", "B")].balance == Decimal("5.00")


def test_webhook_secret_not_configured_returns_500():
    client, store = _make_client(secret="")

    res = client.post("/api/webhook/stripe", content=b"{}", headers={"stripe-signature": "t=1,v1=x"})

    assert res.status_code == 500


def test_manual_process_is_idempotent_on_order_id():
    client, store = _make_client()
    body = {"user_id": "U", "business_id": "B", "amount": "100.00", "order_id": "order_1"}

    res = client.post("/api/transactions/process", json=body)
    assert res.status_code == 200
    assert res.json()["status"] == "processed"
    assert res.json()["settlement"]["transaction"]["amount"] == "100.00"

    res = client.post("/api/transactions/process", json=body)
    assert res.status_code == 200
    assert res.json()["status"] == "already_processed"

    assert len(store.transactions) == 1


def test_manual_process_validation():
    client, store = _make_client()

    res = client.post(
        "/api/transactions/process",
        json={"user_id": "U", "business_id": "B", "amount": "0", "order_id": "order_1"},
    )
    assert res.status_code == 422

    # rounds to 0.00
    res = client.post(
        "/api/transactions/process",
        json={"user_id": "U", "business_id": "B", "amount": "0.004", "order_id": "order_1"},
    )
    assert res.status_code == 400
    assert store.transactions == {}

    res = client.post(
        "/api/transactions/process",
        json={"user_id": "U", "business_id": "missing", "amount": "10.00", "order_id": "order_1"},
    )
    assert res.status_code == 400


def test_reconcile_endpoint():
    client, store = _make_client()

    res = client.get("/api/wallets/reconcile?user_id=U&business_id=B")
    assert res.status_code == 405

    res = client.post("/api/wallets/reconcile?user_id=U&business_id=B")
    assert res.status_code == 404

    _post_event(client, "payment_intent.succeeded", _payment_intent("pi_1", 10000))
    store.wallets[("U", "B")].balance = Decimal("42.00")

    res = client.post("/api/wallets/reconcile?user_id=U&business_id=B")
    assert res.status_code == 200
    assert res.json()["balance"] == "5.00"


def test_health():
    client, _ = _make_client()

    res = client.get("/health")

    assert res.status_code == 200
    assert res.json() == {"status": "ok"}
