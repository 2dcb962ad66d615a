"""Signed push-queue callback."""
import json
import time
import uuid

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import Session

from chaptersmith.core.config import settings
from chaptersmith.models.book import BookStatus
from chaptersmith.models.credit import CreditTransaction, TransactionType
from chaptersmith.services.book_store import BookStore
from chaptersmith.services.signatures import body_digest

CALLBACK = f"{settings.API_V1_STR}/queues/book-generation"
CALLBACK_URL = "https://books.example.com/api/v1/queues/book-generation"


@pytest.fixture(autouse=True)
def signing_keys(monkeypatch):
    monkeypatch.setattr(settings, "QSTASH_CURRENT_SIGNING_KEY", "current-key")
    monkeypatch.setattr(settings, "QSTASH_NEXT_SIGNING_KEY", "next-key")
    monkeypatch.setattr(settings, "QUEUE_CALLBACK_URL", CALLBACK_URL)


def _sign(body: bytes, key: str = "current-key", url: str = CALLBACK_URL) -> str:
    now = int(time.time())
    claims = {
        "iss": "Upstash",
        "sub": url,
        "iat": now,
        "exp": now + 300,
        "jti": str(uuid.uuid4()),
        "body": body_digest(body),
    }
    return jwt.encode(claims, key, algorithm="HS256")


def _post(client: TestClient, body: bytes, signature=None, retried=None):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["Upstash-Signature"] = signature
    if retried is not None:
        headers["Upstash-Retried"] = str(retried)
    return client.post(CALLBACK, content=body, headers=headers)


class TestSignature:
    def test_missing_signature(self, client: TestClient):
        body = b"{}"
        response = _post(client, body)

        assert response.status_code == 401
        assert response.json() == {"ok": False, "error": "Unauthorized"}

    def test_wrong_key(self, client: TestClient):
        body = b"{}"
        assert _post(client, body, _sign(body, key="someone-else")).status_code == 401

    def test_wrong_callback_url(self, client: TestClient):
        body = b"{}"
        signature = _sign(body, url="https://evil.example.com/hook")
        assert _post(client, body, signature).status_code == 401

    def test_tampered_body(self, client: TestClient):
        signature = _sign(b'{"bookId": "a"}')
        assert _post(client, b'{"bookId": "b"}', signature).status_code == 401

    def test_next_key_is_accepted(self, client: TestClient):
        body = b"not json"
        assert _post(client, body, _sign(body, key="next-key")).status_code == 400


class TestDelivery:
    def test_invalid_json(self, client: TestClient):
        body = b"not json"
        response = _post(client, body, _sign(body))

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid JSON"

    def test_invalid_payload(self, client: TestClient):
        body = json.dumps({"bookId": "not-a-uuid", "step": "init"}).encode()
        response = _post(client, body, _sign(body))

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid payload"

    def test_init_step_is_handled(self, client: TestClient, db: Session, queued_book, job_queue):
        job = queued_book()
        body = json.dumps(job.to_payload()).encode()

        response = _post(client, body, _sign(body))

        assert response.status_code == 200
        assert response.json() == {"ok": True, "outcome": "handled"}
        assert job_queue.steps() == ["chapter:1"]

    def test_unknown_book_is_acknowledged(self, client: TestClient, queued_book):
        job = queued_book().model_copy(update={"book_id": uuid.uuid4()})
        body = json.dumps(job.to_payload()).encode()

        response = _post(client, body, _sign(body))

        assert response.json()["outcome"] == "acknowledged"

    def test_handler_error_returns_500_for_retry(
        self, client: TestClient, db: Session, queued_book, generator
    ):
        generator.fail_stage = "plan"
        job = queued_book()
        body = json.dumps(job.to_payload()).encode()

        response = _post(client, body, _sign(body), retried=0)

        assert response.status_code == 500
        assert response.json() == {"ok": False, "error": "Worker error"}
        assert BookStore(db).require_book(job.book_id).status == BookStatus.GENERATING

    def test_final_retry_compensates(
        self, client: TestClient, db: Session, queued_book, generator
    ):
        generator.fail_stage = "plan"
        job = queued_book()
        body = json.dumps(job.to_payload()).encode()

        response = _post(client, body, _sign(body), retried=settings.QUEUE_MAX_RETRIES)

        assert response.status_code == 500
        assert BookStore(db).require_book(job.book_id).status == BookStatus.FAILED
        refunds = (
            db.query(CreditTransaction)
            .filter(
                CreditTransaction.book_id == job.book_id,
                CreditTransaction.type == TransactionType.USAGE_REFUND,
            )
            .count()
        )
        assert refunds == 1
