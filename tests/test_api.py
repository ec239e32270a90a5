"""
Integration tests for the Loan Health API
Tests end-to-end flows using FastAPI TestClient
"""

import pytest
from datetime import date
from decimal import Decimal
from fastapi.testclient import TestClient

from loan_health.api import app, set_system, LoanHealthSystem
from loan_health.config import LoanHealthConfig
from loan_health.currency import Money, Currency
from loan_health.events import EventDispatcher
from loan_health.storage import InMemoryStorage


class Clock:
    """Settable clock for the service"""

    def __init__(self, today: date):
        self.today = today

    def __call__(self) -> date:
        return self.today


@pytest.fixture
def clock():
    return Clock(date(2024, 1, 1))


@pytest.fixture
def system(clock):
    """Loan health system over in-memory storage, installed as the global system"""
    test_system = LoanHealthSystem(
        settings=LoanHealthConfig(),
        storage=InMemoryStorage(),
        dispatcher=EventDispatcher(),
        clock=clock
    )
    set_system(test_system)
    yield test_system
    set_system(None)


@pytest.fixture
def client(system):
    return TestClient(app)


def register(client, loan_id="L1", principal="1200.00", term=12, rate_bps=0):
    return client.post("/loans", json={
        "loan_id": loan_id,
        "borrower_id": "B-" + loan_id,
        "principal": {"amount": principal, "currency": "USD"},
        "annual_rate_bps": rate_bps,
        "term_months": term
    })


def post_repayment(client, repayment_id, amount, posted_at, loan_id="L1"):
    return client.post("/repayments", json={
        "loan_id": loan_id,
        "repayment_id": repayment_id,
        "amount": {"amount": amount, "currency": "USD"},
        "posted_at": posted_at
    })


class TestHealthEndpoint:
    """Test service health"""

    def test_health(self, client):
        """Test health endpoint"""
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestLoanEndpoints:
    """Test loan registration and queries"""

    def test_register_loan(self, client):
        """Test registering a loan"""
        r = register(client)
        assert r.status_code == 201
        data = r.json()
        assert data["id"] == "L1"
        assert data["status"] == "active"
        assert data["monthly_payment"] == {"amount": "100.00", "currency": "USD"}
        assert data["originated_at"] == "2024-01-01"

    def test_duplicate_loan(self, client):
        """Test that registering the same loan twice is a conflict"""
        register(client)
        assert register(client).status_code == 409

    @pytest.mark.parametrize("principal,term", [
        ("1200.00", 0),
        ("-5.00", 12),
        ("not-a-number", 12),
    ])
    def test_invalid_loan(self, client, principal, term):
        """Test validation failures"""
        assert register(client, principal=principal, term=term).status_code == 422

    def test_unknown_currency(self, client):
        """Test a currency code that is not supported"""
        r = client.post("/loans", json={
            "borrower_id": "B1",
            "principal": {"amount": "100.00", "currency": "XXX"},
            "annual_rate_bps": 0,
            "term_months": 3
        })
        assert r.status_code == 422

    def test_get_loan(self, client):
        """Test loan details and 404 for unknown loans"""
        register(client)
        assert client.get("/loans/L1").json()["borrower_id"] == "B-L1"
        assert client.get("/loans/missing").status_code == 404

    def test_list_loans(self, client):
        """Test listing loans with a status filter"""
        register(client, "L1")
        register(client, "L2")

        assert client.get("/loans").json()["count"] == 2
        assert client.get("/loans", params={"health_status": "active"}).json()["count"] == 2
        assert client.get("/loans", params={"health_status": "late"}).json()["count"] == 0
        assert client.get("/loans", params={"health_status": "bogus"}).status_code == 422

    def test_schedule(self, client):
        """Test schedule queries"""
        register(client)

        schedule = client.get("/loans/L1/schedule").json()
        assert schedule["version"] == 0
        assert len(schedule["installments"]) == 12
        assert schedule["installments"][0]["due_date"] == "2024-02-01"
        assert schedule["closed_at"] is None

        assert len(client.get("/loans/L1/schedules").json()["versions"]) == 1
        assert client.get("/loans/L1/schedule", params={"version": 5}).status_code == 404

    def test_snapshot_and_classify(self, client, clock):
        """Test the live snapshot and an explicit classification run"""
        register(client)
        clock.today = date(2024, 2, 10)

        snapshot = client.get("/loans/L1/snapshot").json()
        assert snapshot["health_status"] == "late"
        assert snapshot["days_behind"] == 9
        assert client.get("/loans/L1").json()["status"] == "active"

        r = client.post("/loans/L1/classify")
        assert r.status_code == 200
        assert client.get("/loans/L1").json()["status"] == "late"

        r = client.post("/loans/L1/classify", json={"as_of": "2024-03-15"})
        assert r.json()["health_status"] == "at_risk"
        assert r.json()["as_of"] == "2024-03-15"

        assert client.post("/loans/missing/classify").status_code == 404

    def test_at_risk_listing(self, client, clock):
        """Test the at-risk portfolio view"""
        register(client, "L1")
        register(client, "L2")
        register(client, "L3")
        clock.today = date(2024, 1, 28)
        post_repayment(client, "r2", "100.00", "2024-01-28T10:00:00Z", loan_id="L2")
        post_repayment(client, "r3", "300.00", "2024-01-28T10:00:00Z", loan_id="L3")
        clock.today = date(2024, 3, 5)

        data = client.get("/loans/at-risk").json()

        assert [loan["id"] for loan in data["loans"]] == ["L1", "L2"]
        assert data["loans"][0]["health"]["health_status"] == "at_risk"
        assert data["loans"][1]["health"]["days_behind"] == 4
        assert data["summary"] == {"total": 2, "late": 1, "at_risk": 1, "defaulted": 0, "recovering": 0}


class TestRepaymentEndpoints:
    """Test RepaymentPosted intake"""

    def test_post_repayment(self, client, clock):
        """Test applying a repayment and retrying it"""
        register(client)
        clock.today = date(2024, 1, 20)

        r = post_repayment(client, "r1", "100.00", "2024-01-20T10:00:00Z")
        assert r.status_code == 200
        data = r.json()
        assert data["repayment_id"] == "r1"
        assert data["health"]["remaining_balance"] == {"amount": "1100.00", "currency": "USD"}

        retry = post_repayment(client, "r1", "100.00", "2024-01-20T10:00:00Z")
        assert retry.status_code == 200
        assert retry.json()["health"]["remaining_balance"] == {"amount": "1100.00", "currency": "USD"}
        assert client.get("/loans/L1").json()["remaining_balance"]["amount"] == "1100.00"

    def test_repayment_errors(self, client):
        """Test unknown loans and invalid amounts"""
        register(client)
        assert post_repayment(client, "r1", "100.00", "2024-01-20T10:00:00Z", loan_id="missing").status_code == 404
        assert post_repayment(client, "r2", "0.00", "2024-01-20T10:00:00Z").status_code == 422


class TestRefinanceEndpoints:
    """Test refinance options, execution and history"""

    def test_refinance_flow(self, client, system, clock):
        """Test quoting and accepting a refinance"""
        register(client)
        system.wallet.credit("B-L1", Money(Decimal("50.00"), Currency.USD))
        clock.today = date(2024, 1, 15)

        quote = client.get("/loans/L1/refinance-options").json()
        assert quote["eligible"]
        assert quote["fee"] == {"amount": "12.00", "currency": "USD"}
        assert [o["new_term"] for o in quote["options"]] == [18, 24, 30]

        r = client.post("/loans/L1/refinance", json={
            "new_term": 18,
            "reason": "school fees",
            "quoted_balance": quote["remaining_balance"],
            "quoted_fee": quote["fee"],
            "quoted_schedule_version": quote["schedule_version"]
        })
        assert r.status_code == 200
        record = r.json()
        assert record["new_term"] == 18
        assert record["new_schedule_version"] == 1
        assert record["fee"]["amount"] == "12.00"

        assert client.get("/loans/L1").json()["schedule_version"] == 1
        assert len(client.get("/loans/L1/schedules").json()["versions"]) == 2
        assert client.get("/loans/L1/schedule", params={"version": 0}).json()["closed_reason"] == "refinanced"
        history = client.get("/loans/L1/refinances").json()["refinances"]
        assert [h["reason"] for h in history] == ["school fees"]

    def test_stale_quote_is_a_conflict(self, client, system, clock):
        """Test accepting a quote after a repayment changed the balance"""
        register(client)
        system.wallet.credit("B-L1", Money(Decimal("50.00"), Currency.USD))
        clock.today = date(2024, 1, 15)
        quote = client.get("/loans/L1/refinance-options").json()

        post_repayment(client, "r1", "100.00", "2024-01-15T10:00:00Z")

        r = client.post("/loans/L1/refinance", json={
            "new_term": 18,
            "quoted_balance": quote["remaining_balance"],
            "quoted_fee": quote["fee"]
        })
        assert r.status_code == 409

    def test_refinance_errors(self, client, system, clock):
        """Test insufficient funds, unoffered terms and incomplete quotes"""
        register(client)
        clock.today = date(2024, 1, 15)

        assert client.post("/loans/L1/refinance", json={"new_term": 18}).status_code == 402

        system.wallet.credit("B-L1", Money(Decimal("50.00"), Currency.USD))
        assert client.post("/loans/L1/refinance", json={"new_term": 19}).status_code == 422
        r = client.post("/loans/L1/refinance", json={
            "new_term": 18,
            "quoted_fee": {"amount": "12.00", "currency": "USD"}
        })
        assert r.status_code == 422
        assert client.post("/loans/missing/refinance", json={"new_term": 18}).status_code == 404
        assert client.get("/loans/missing/refinance-options").status_code == 404
