import json
import os
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qsl

# Settings() is built at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_payments.db")
os.environ.setdefault("SERVICE_API_KEY", "test-key")
os.environ["SUMUP_CLIENT_ID"] = ""
os.environ["SUMUP_CLIENT_SECRET"] = ""
os.environ["SUMUP_MERCHANT_CODE"] = ""

import anyio
import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from workshop_payments.db import get_session
from workshop_payments.main import app as fastapi_app
from workshop_payments.services.sumup import SumUpService
from workshop_payments.utils import get_sumup


class FakeClock:
    def __init__(self, start=datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeSumUp:
    """In-memory stand-in for the SumUp API, served through httpx.MockTransport."""

    def __init__(self, expires_in=3600):
        self.expires_in = expires_in
        self.checkouts = {}
        self.grants = []
        self.requests = []
        self.failing_grants = set()
        self.create_failure = None  # (status, body)
        self.issued = 0

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/token":
            form = dict(parse_qsl(request.content.decode()))
            grant = form["grant_type"]
            self.grants.append(grant)
            if grant in self.failing_grants:
                return httpx.Response(401, json={"error": "invalid_grant"})
            self.issued += 1
            return httpx.Response(200, json={
                "access_token": f"tok-{self.issued}",
                "refresh_token": f"ref-{self.issued}",
                "token_type": "Bearer",
                "expires_in": self.expires_in,
            })

        if not request.headers.get("Authorization", "").startswith("Bearer tok-"):
            return httpx.Response(401, json={"error_code": "NOT_AUTHORIZED"})

        if path == "/v0.1/checkouts" and request.method == "POST":
            if self.create_failure:
                status, body = self.create_failure
                return httpx.Response(status, text=body)
            body = json.loads(request.content)
            if any(c["checkout_reference"] == body["checkout_reference"] for c in self.checkouts.values()):
                return httpx.Response(409, json={"error_code": "DUPLICATED_CHECKOUT"})
            checkout_id = f"chk_{len(self.checkouts) + 1}"
            checkout = {
                "id": checkout_id,
                "checkout_reference": body["checkout_reference"],
                "amount": body["amount"],
                "currency": body["currency"],
                "description": body["description"],
                "merchant_code": body["merchant_code"],
                "status": "PENDING",
                "hosted_checkout_url": f"https://pay.example/{checkout_id}",
                "transactions": [],
            }
            self.checkouts[checkout_id] = checkout
            return httpx.Response(201, json=checkout)

        if path == "/v0.1/checkouts":
            reference = request.url.params.get("checkout_reference")
            found = [c for c in self.checkouts.values() if reference is None or c["checkout_reference"] == reference]
            return httpx.Response(200, json=found)

        if path.startswith("/v0.1/checkouts/"):
            checkout = self.checkouts.get(path.rsplit("/", 1)[1])
            if checkout is None:
                return httpx.Response(404, json={"error_code": "NOT_FOUND", "message": "Resource not found"})
            return httpx.Response(200, json=checkout)

        return httpx.Response(404)

    def mark_paid(self, checkout_id):
        checkout = self.checkouts[checkout_id]
        checkout["status"] = "PAID"
        checkout["transactions"] = [{
            "id": "txn_1",
            "transaction_code": "TCODE1",
            "amount": checkout["amount"],
            "currency": checkout["currency"],
            "status": "SUCCESSFUL",
            "auth_code": "AUTH1",
        }]

    def set_status(self, checkout_id, status):
        self.checkouts[checkout_id]["status"] = status


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sumup():
    return FakeSumUp()


@pytest.fixture
def make_sumup():
    """Build SumUpService instances against a mock transport and close them afterwards."""
    services = []

    def factory(transport, **kwargs):
        service = SumUpService(
            "client-id",
            "client-secret",
            "MERCHANT1",
            api_base="https://api.sumup.test",
            redirect_url="https://shop.test/payments/success",
            transport=transport,
            **kwargs,
        )
        services.append(service)
        return service

    yield factory

    for service in services:
        anyio.run(service.aclose)


@pytest.fixture
def sumup(make_sumup, fake_sumup, clock):
    return make_sumup(fake_sumup.transport, clock=clock)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "payments.db"


@pytest.fixture
def sync_engine(db_path):
    engine = create_engine(f"sqlite:///{db_path}")
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def client(sync_engine, db_path, monkeypatch):
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    TestingSession = sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_session():
        async with TestingSession() as session:
            yield session

    async def skip_init_db():
        return None

    monkeypatch.setattr("workshop_payments.main.init_db", skip_init_db)
    fastapi_app.dependency_overrides[get_session] = override_session

    with TestClient(fastapi_app, headers={"X-API-KEY": "test-key"}) as c:
        yield c

    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def with_sumup(client, sumup):
    fastapi_app.dependency_overrides[get_sumup] = lambda: sumup
    return sumup
