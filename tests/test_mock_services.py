import json

import pytest
from fastapi.testclient import TestClient

from conftest import headers_for
from mock_services import mock_payment_gateway, mock_status_consumer, mock_storage_worker
from print_service import config
from print_service.clients import PaymentGatewayClient
from print_service.errors import UpstreamUnavailable
from print_service.models import OrderStatus, PaymentCallback
from print_service.payments import PaymentReconciler


@pytest.fixture
def gateway_app(monkeypatch):
    monkeypatch.setattr(mock_payment_gateway, "KEY_SECRET", "mock-secret")
    monkeypatch.setattr(mock_payment_gateway, "intents", {})
    return TestClient(mock_payment_gateway.app)


def mock_gateway_client(gateway_app):
    gateway = PaymentGatewayClient(key_id="rzp_mock", key_secret="mock-secret")
    gateway.client.close()
    gateway.client = gateway_app
    return gateway


def test_mock_gateway_checkout_is_accepted_by_reconciler(session, gateway_app, publisher, pending_order, customer):
    gateway = mock_gateway_client(gateway_app)
    reconciler = PaymentReconciler(gateway, secret="mock-secret", currency="INR", events=publisher)

    handle = reconciler.initiate(session, customer, pending_order.id)
    assert handle.gateway_intent_id.startswith("order_")

    callback = gateway_app.post(f"/v1/checkout/{handle.gateway_intent_id}").json()
    result = reconciler.verify(session, PaymentCallback(**callback))
    assert result.status is OrderStatus.PAID


def test_mock_gateway_outage(gateway_app):
    gateway = mock_gateway_client(gateway_app)
    with pytest.raises(UpstreamUnavailable) as exc:
        gateway.create_intent("fail_1", 100, "INR")
    assert exc.value.details["upstream_status"] == 502


def test_mock_gateway_unknown_checkout(gateway_app):
    assert gateway_app.post("/v1/checkout/order_missing").status_code == 404


@pytest.fixture
def storage(monkeypatch, tmp_path, client):
    """Storage worker whose redemption calls go to the in-process order service."""
    client.headers.update({"X-Storage-Worker-Key": config.STORAGE_WORKER_API_KEY})
    monkeypatch.setattr(mock_storage_worker, "client", client)
    monkeypatch.setattr(mock_storage_worker, "STORAGE_ROOT", str(tmp_path / "objects"))
    return TestClient(mock_storage_worker.app)


def test_upload_through_worker(storage, client, customer):
    token = client.post("/api/files/token/upload", headers=headers_for(customer)).json()["token"]
    auth = {"Authorization": f"Bearer {token}"}

    stored = storage.post("/upload", content=b"%PDF-1.4 test", headers=auth)
    assert stored.status_code == 200
    assert stored.json()["key"].startswith(f"uploads/{customer.user_id}/")

    replay = storage.post("/upload", content=b"again", headers=auth)
    assert replay.status_code == 403


def test_empty_upload_keeps_the_grant(storage, client, customer):
    token = client.post("/api/files/token/upload", headers=headers_for(customer)).json()["token"]
    auth = {"Authorization": f"Bearer {token}"}

    assert storage.post("/upload", content=b"", headers=auth).status_code == 400
    assert storage.post("/upload", content=b"%PDF-1.4", headers=auth).status_code == 200


def test_worker_requires_bearer_token(storage):
    assert storage.post("/upload", content=b"data").status_code == 401


def test_download_through_worker(storage, client, rate_card, customer, shop):
    token = client.post("/api/files/token/upload", headers=headers_for(customer)).json()["token"]
    key = storage.post("/upload", content=b"page one", headers={"Authorization": f"Bearer {token}"}).json()["key"]

    created = client.post("/api/orders", headers=headers_for(customer), json={
        "shop_id": "shop-1",
        "files": [{"storage_key": key, "file_name": "one.pdf", "pages": 1}],
    })
    assert created.status_code == 201

    grant = client.post("/api/files/token/download", json={"storage_key": key}, headers=headers_for(shop)).json()
    assert grant["target_uri"].endswith(f"/download/{key}")
    response = storage.get(f"/download/{key}", headers={"Authorization": f"Bearer {grant['token']}"})
    assert response.status_code == 200
    assert response.content == b"page one"


class FakeChannel:
    def __init__(self):
        self.acked = []
        self.nacked = []

    def basic_ack(self, delivery_tag):
        self.acked.append(delivery_tag)

    def basic_nack(self, delivery_tag, requeue):
        self.nacked.append((delivery_tag, requeue))


class FakeMethod:
    def __init__(self, delivery_tag):
        self.delivery_tag = delivery_tag


def test_status_consumer_counts_and_rejects(monkeypatch):
    monkeypatch.setattr(mock_status_consumer, "status_counts", mock_status_consumer.Counter())
    channel = FakeChannel()
    event = {"orderId": "ord-1", "previousStatus": "pending", "status": "paid", "actorRole": "system"}

    mock_status_consumer.on_status_event(channel, FakeMethod(1), None, json.dumps(event).encode())
    mock_status_consumer.on_status_event(channel, FakeMethod(2), None, b"not json")

    assert channel.acked == [1]
    assert channel.nacked == [(2, False)]
    assert mock_status_consumer.status_counts == {"paid": 1}
