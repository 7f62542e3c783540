"""
Integration tests for the Deposit Engine API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from deposit_engine.api import create_app


@pytest.fixture
def client(engine):
    """Test client over an in-memory engine on the controlled clock"""
    return TestClient(create_app(engine))


@pytest.fixture
def seeded(client):
    """Members, savings and FD products registered through the API"""
    for party_id, party_type in (("M1", "member"), ("N1", "non_member")):
        r = client.post("/parties", json={"party_id": party_id, "party_type": party_type, "name": party_id})
        assert r.status_code == 201
    r = client.post("/products", json={
        "code": "SAV", "name": "Member Savings", "category": "member_deposits",
        "interest_method": "quarterly_min_balance", "annual_rate": "0.12"
    })
    assert r.status_code == 201
    r = client.post("/products", json={
        "code": "FD", "name": "Fixed Deposit", "category": "member_deposits",
        "interest_method": "fd_maturity",
        "attributes": {
            "rate_table": [{"tenor_days": 180, "rate": "0.055"}, {"tenor_days": 365, "rate": "0.065"}],
            "default_tenor_days": 180,
            "premature_threshold_months": 3,
            "premature_annual_rate": "0.03",
        }
    })
    assert r.status_code == 201
    return client


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        data = client.get("/").json()
        assert data["name"] == "Deposit Engine API"
        assert "interest" in data["endpoints"]


class TestAccountEndpoints:

    def test_open_deposit_withdraw(self, seeded):
        r = seeded.post("/accounts", json={"party_id": "M1", "product_code": "SAV", "initial_deposit": "1000.00"})
        assert r.status_code == 201
        assert r.json()["balance"] == "1000.00"

        r = seeded.post("/accounts/M1/SAV/deposit", json={"amount": "250.50"})
        assert r.status_code == 200
        assert r.json()["balance"] == "1250.50"

        r = seeded.post("/accounts/M1/SAV/withdraw", json={"amount": "50.50", "narration": "ATM"})
        assert r.json()["balance"] == "1200.00"
        assert r.json()["entry"]["narration"] == "ATM"

        account = seeded.get("/accounts/M1/SAV").json()
        assert account["principal_balance"] == "1200.00"

        r = seeded.get("/accounts/M1/SAV/transactions", params={"kind": "withdrawal"})
        assert r.json()["count"] == 1

        assert seeded.get("/accounts/M1/SAV/reconcile").json()["in_balance"] is True
        totals = seeded.get("/admin/products/SAV/totals").json()
        assert totals["total_balance"] == "1200.00"

    def test_error_bodies(self, seeded):
        r = seeded.get("/accounts/M1/SAV")
        assert r.status_code == 404
        assert r.json()["code"] == "not_found"

        r = seeded.post("/accounts", json={"party_id": "N1", "product_code": "SAV"})
        assert r.status_code == 409
        assert r.json()["details"]["reason"] == "ineligible_product"

        seeded.post("/accounts", json={"party_id": "M1", "product_code": "SAV"})
        r = seeded.post("/accounts/M1/SAV/withdraw", json={"amount": "10.00"})
        assert r.status_code == 409
        assert r.json()["details"]["reason"] == "insufficient_funds"

        r = seeded.post("/accounts/M1/SAV/deposit", json={"amount": "ten"})
        assert r.status_code == 400
        assert r.json()["code"] == "validation_error"

    def test_actor_header_reaches_audit(self, seeded, engine):
        seeded.post("/accounts", json={"party_id": "M1", "product_code": "SAV"},
                    headers={"X-Actor": "teller-7"})
        account = engine.get_account("M1", "SAV")
        events = engine.audit_trail.get_events_for_entity("account", account.id)
        assert events[0].actor == "teller-7"

    def test_products_listing(self, seeded):
        data = seeded.get("/products").json()
        assert data["count"] == 2
        assert seeded.get("/products/FD").json()["interest_method"] == "fd_maturity"


class TestInterestEndpoints:

    @pytest.fixture(autouse=True)
    def _account(self, seeded, clock):
        seeded.post("/accounts", json={"party_id": "M1", "product_code": "SAV", "initial_deposit": "10000.00"})
        clock.set_time(clock.now().replace(year=2024, month=10, day=1))
        self.client = seeded

    def test_preview_run_reverse(self):
        query = {"product_code": "SAV", "quarter_key": "2024Q1"}
        preview = self.client.get("/interest/preview", params=query).json()
        assert preview["total_interest"] == "300.00"
        assert preview["items"][0]["min_balance"] == "10000.00"

        r = self.client.post("/interest/run", json=query)
        assert r.status_code == 201
        batch = r.json()["batch"]
        assert batch["total_interest"] == "300.00"

        r = self.client.post("/interest/run", json=query)
        assert r.status_code == 409
        assert r.json()["details"]["reason"] == "batch_already_posted"

        r = self.client.post("/interest/reverse", json=query)
        assert r.status_code == 200
        assert r.json()["batch"]["reversed"] is True

        assert self.client.get(f"/interest/batches/{batch['id']}").json()["reversed"] is True
        assert self.client.get("/interest/batches", params={"product_code": "SAV"}).json()["count"] == 1
        assert self.client.get("/accounts/M1/SAV").json()["principal_balance"] == "10000.00"

    def test_bad_quarter_key(self):
        r = self.client.get("/interest/preview", params={"product_code": "SAV", "quarter_key": "2024Q9"})
        assert r.status_code == 400

    def test_quarter_not_ended(self):
        r = self.client.get("/interest/preview", params={"product_code": "SAV", "quarter_key": "2024Q2"})
        assert r.status_code == 409
        assert r.json()["details"]["reason"] == "quarter_not_ended"

    def test_reverse_without_batch(self):
        r = self.client.post("/interest/reverse", json={"product_code": "SAV", "quarter_key": "2023Q4"})
        assert r.status_code == 404

    def test_non_quarterly_product(self):
        r = self.client.get("/interest/preview", params={"product_code": "FD", "quarter_key": "2024Q1"})
        assert r.status_code == 422
        assert r.json()["code"] == "configuration_error"


class TestFixedDepositEndpoints:

    @pytest.fixture(autouse=True)
    def _fd(self, seeded):
        seeded.post("/accounts", json={"party_id": "M1", "product_code": "SAV"})
        r = seeded.post("/fd/open", json={
            "party_id": "M1", "product_code": "FD", "principal": "50000.00",
            "payout_product_code": "SAV", "tenor_days": 180
        })
        assert r.status_code == 201
        self.opened = r.json()
        self.client = seeded

    def test_open_and_get(self):
        assert self.opened["annual_rate"] == "0.055"
        assert self.opened["tenor_days"] == 180

        fd = self.client.get("/fd/M1/FD").json()
        assert fd["principal_balance"] == "50000.00"
        assert fd["terms"]["open_principal"] == "50000.00"

    def test_previews(self):
        params = {"party_id": "M1", "product_code": "FD"}
        maturity = self.client.get("/fd/preview/maturity", params=params).json()
        assert maturity["interest"] == "1356.16"

        premature = self.client.get("/fd/preview/premature", params=params).json()
        assert premature["eligible"] is False
        assert premature["elapsed_days"] == 0

    def test_not_matured_then_withdraw(self, clock):
        body = {"party_id": "M1", "product_code": "FD", "payout_product_code": "SAV"}
        r = self.client.post("/fd/mature-or-renew", json=body)
        assert r.status_code == 409
        assert r.json()["details"]["reason"] == "fd_not_matured"

        clock.advance(days=180)
        r = self.client.post("/fd/mature-or-renew", json=body)
        assert r.status_code == 200
        assert r.json()["payout"] == "51356.16"
        assert r.json()["account"]["status"] == "closed"

    def test_renew_requires_mode(self, clock):
        clock.advance(days=180)
        r = self.client.post("/fd/mature-or-renew", json={
            "party_id": "M1", "product_code": "FD", "payout_product_code": "SAV",
            "action": "renew", "tenor_days": 365
        })
        assert r.status_code == 400

    def test_premature_close(self, clock):
        clock.advance(days=90)
        r = self.client.post("/fd/close/premature", json={
            "party_id": "M1", "product_code": "FD", "payout_product_code": "SAV"
        })
        assert r.status_code == 200
        assert r.json()["interest"] == "369.86"
        assert self.client.get("/accounts/M1/SAV").json()["principal_balance"] == "50369.86"

    def test_audit_chain_intact(self):
        assert self.client.get("/admin/audit/verify").json()["valid"] is True
