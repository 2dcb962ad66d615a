"""Payment provider webhook and credit reads."""
import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from chaptersmith.core.config import settings
from chaptersmith.models.user import User
from chaptersmith.services.credits import CreditLedger

WEBHOOK = f"{settings.API_V1_STR}/credits/webhook"
SECRET = "whsec-test"


@pytest.fixture(autouse=True)
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", SECRET)


def _event(name: str, user: User, credits=50, order_id="order-1") -> bytes:
    return json.dumps(
        {
            "meta": {
                "event_name": name,
                "custom_data": {
                    "user_id": str(user.id),
                    "credits": str(credits),
                    "package_id": "starter",
                },
            },
            "data": {
                "id": order_id,
                "attributes": {"order_number": 1001, "total": 900, "currency": "USD"},
            },
        }
    ).encode()


def _post(client: TestClient, body: bytes, secret: str = SECRET):
    signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return client.post(
        WEBHOOK,
        content=body,
        headers={"Content-Type": "application/json", "X-Signature": signature},
    )


class TestPaymentWebhook:
    def test_order_created_adds_credits_once(self, client: TestClient, db: Session, test_user: User):
        body = _event("order_created", test_user)

        assert _post(client, body).json() == {"received": True}
        assert _post(client, body).status_code == 200

        assert CreditLedger(db).get_balance(test_user.id).balance == 50

    def test_bad_signature_is_rejected(self, client: TestClient, db: Session, test_user: User):
        response = _post(client, _event("order_created", test_user), secret="wrong")

        assert response.status_code == 400
        assert CreditLedger(db).get_balance(test_user.id).balance == 0

    def test_order_refunded_removes_credits(self, client: TestClient, db: Session, test_user: User):
        _post(client, _event("order_created", test_user, credits=50))
        _post(client, _event("order_refunded", test_user, credits=30))

        assert CreditLedger(db).get_balance(test_user.id).balance == 20

    def test_missing_custom_data_is_ignored(self, client: TestClient, db: Session, test_user: User):
        body = json.dumps({"meta": {"event_name": "order_created"}, "data": {"id": "o"}}).encode()

        assert _post(client, body).json() == {"received": True}
        assert CreditLedger(db).get_balance(test_user.id).balance == 0

    def test_unhandled_event_is_acknowledged(self, client: TestClient, test_user: User):
        assert _post(client, _event("subscription_created", test_user)).status_code == 200


class TestCreditReads:
    def test_balance_and_transactions(self, client: TestClient, test_user: User, fund):
        fund(test_user, 25)

        balance = client.get(f"{settings.API_V1_STR}/credits/balance").json()
        assert balance == {"ok": True, "balance": 25, "free_credits": 0}

        transactions = client.get(f"{settings.API_V1_STR}/credits/transactions").json()
        assert transactions["ok"] is True
        assert [t["type"] for t in transactions["transactions"]] == ["purchase"]
        assert transactions["transactions"][0]["amount"] == 25
