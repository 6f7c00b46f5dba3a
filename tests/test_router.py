import httpx
import pytest
import pytest_asyncio

from cashupay.core.base import Store
from cashupay.core.settings import settings
from cashupay.gateway.app import app
from cashupay.gateway.gateway import Gateway
from cashupay.gateway.startup import get_gateway
from cashupay.wallet.fake import FakeWallet
from tests.conftest import MINT_URL

AUTH = {"Authorization": "token test_api_key"}


@pytest_asyncio.fixture(scope="function")
async def client(gateway: Gateway):
    # no opportunistic background runs unless a test asks for one
    gateway.cooldown.interval = 10**12
    app.dependency_overrides[get_gateway] = lambda: gateway
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://gateway.test"
    ) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_create_invoice(client: httpx.AsyncClient, store: Store):
    response = await client.post(
        f"/api/v1/stores/{store.id}/invoices",
        json={"amount": 1000, "currency": "SAT", "metadata": {"orderId": "7"}},
        headers=AUTH,
    )
    assert response.status_code == 200, response.text
    data = response.json()
    assert data["id"].startswith("inv_")
    assert data["storeId"] == store.id
    assert data["status"] == "New"
    assert data["amount"] == "1000"
    assert data["metadata"] == {"orderId": "7"}
    assert data["checkout"]["paymentMethods"]["BTC-LightningNetwork"]["destination"]


@pytest.mark.asyncio
async def test_unauthorized(client: httpx.AsyncClient, store: Store):
    url = f"/api/v1/stores/{store.id}/invoices"
    response = await client.post(url, json={"amount": 1000})
    assert response.status_code == 401
    response = await client.get(url, headers={"Authorization": "token wrong"})
    assert response.status_code == 401
    response = await client.get(url, headers={"Authorization": "Bearer test_api_key"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_unknown_store(client: httpx.AsyncClient):
    response = await client.get("/api/v1/stores/nope/invoices", headers=AUTH)
    assert response.status_code == 400
    assert response.json()["code"] == 30001


@pytest.mark.asyncio
async def test_get_invoice_settles_paid_invoice(
    client: httpx.AsyncClient, gateway: Gateway, store: Store
):
    invoice = await gateway.create(store.id, 1000)
    FakeWallet.pay_quote(MINT_URL, invoice.quote_id)

    response = await client.get(
        f"/api/v1/stores/{store.id}/invoices/{invoice.id}", headers=AUTH
    )
    assert response.status_code == 200
    assert response.json()["status"] == "Settled"
    assert await gateway.get_balance(store) == 1000


@pytest.mark.asyncio
async def test_get_invoice_not_found(
    client: httpx.AsyncClient, gateway: Gateway, store: Store
):
    response = await client.get(
        f"/api/v1/stores/{store.id}/invoices/inv_unknown", headers=AUTH
    )
    assert response.status_code == 404

    # invoices of other stores are not visible
    other = await gateway.create_store(
        name="Other store", mint_url=MINT_URL, seed_phrase="other seed", api_key="other"
    )
    invoice = await gateway.create(other.id, 100)
    response = await client.get(
        f"/api/v1/stores/{store.id}/invoices/{invoice.id}", headers=AUTH
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_get_invoice_triggers_background_run(
    client: httpx.AsyncClient, gateway: Gateway, store: Store
):
    gateway.cooldown.interval = 0
    invoice = await gateway.create(store.id, 100)
    response = await client.get(
        f"/api/v1/stores/{store.id}/invoices/{invoice.id}", headers=AUTH
    )
    assert response.status_code == 200
    assert await gateway.cooldown.time_since_last_sync() == 0
    for task in list(gateway.background_tasks):
        report = await task
        assert report.tasks["auto_melt"] == "skipped"


@pytest.mark.asyncio
async def test_list_invoices(client: httpx.AsyncClient, gateway: Gateway, store: Store):
    first = await gateway.create(store.id, 100)
    gateway.clock.advance(1)  # type: ignore
    second = await gateway.create(store.id, 200)

    response = await client.get(f"/api/v1/stores/{store.id}/invoices", headers=AUTH)
    assert response.status_code == 200
    assert [i["id"] for i in response.json()] == [second.id, first.id]

    response = await client.get(
        f"/api/v1/stores/{store.id}/invoices",
        params={"skip": 1, "take": 1},
        headers=AUTH,
    )
    assert [i["id"] for i in response.json()] == [first.id]

    response = await client.get(
        f"/api/v1/stores/{store.id}/invoices", params={"status": "Settled"}, headers=AUTH
    )
    assert response.json() == []

    response = await client.get(
        f"/api/v1/stores/{store.id}/invoices", params={"status": "Paid"}, headers=AUTH
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_cron(client: httpx.AsyncClient, gateway: Gateway, monkeypatch):
    internal_key = await gateway.get_internal_key()

    response = await client.get("/cron", params={"key": "wrong"})
    assert response.status_code == 403

    response = await client.post("/cron", params={"key": internal_key})
    assert response.status_code == 200
    assert response.json()["tasks"]["auto_melt"] == "success"

    response = await client.get("/cron", params={"key": internal_key, "internal": "1"})
    assert response.status_code == 200
    assert response.json()["tasks"]["auto_melt"] == "skipped"

    monkeypatch.setattr(settings, "cron_key", "cron_secret")
    response = await client.get("/cron", params={"key": internal_key})
    assert response.status_code == 403
    response = await client.get("/cron", params={"key": "cron_secret"})
    assert response.status_code == 200
    # internal runs only accept the internal key
    response = await client.get("/cron", params={"key": "cron_secret", "internal": "1"})
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_create_invoice_validation(client: httpx.AsyncClient, store: Store):
    url = f"/api/v1/stores/{store.id}/invoices"
    response = await client.post(url, json={"currency": "SAT"}, headers=AUTH)
    assert response.status_code == 422
    assert response.json()["code"] == 42000
    assert "amount" in response.json()["detail"]

    response = await client.post(url, json={"amount": 0}, headers=AUTH)
    assert response.status_code == 400
    assert response.json() == {"detail": "amount must be positive", "code": 42000}

    response = await client.post(
        url, json={"amount": 10, "currency": "EUR"}, headers=AUTH
    )
    assert response.status_code == 400
    assert response.json()["code"] == 42003
