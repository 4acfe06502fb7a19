"""
Ledger, cashbook and appointment payment tests.
"""
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

import finance
from finance import create_cash_entry, format_brl, pay_appointment
from models import CashEntry, Company
from schemas import AppointmentPaymentRequest, CashEntryCreate
from tests.conftest import run_with_session, send_concurrently

pytestmark = pytest.mark.api


@pytest.mark.unit
@pytest.mark.parametrize("value,expected", [
    (0, "R$ 0,00"),
    (1234.5, "R$ 1.234,50"),
    (-10, "-R$ 10,00"),
])
def test_format_brl(value, expected):
    assert format_brl(value) == expected


@pytest.fixture
def past_appointment(booking, make_appointment):
    """Completed appointment of a R$ 100,00 service"""
    row = make_appointment(booking, when=datetime.utcnow() - timedelta(days=1), status="completed")
    return {**booking, "appointment": row}


class TestTransactions:
    def test_create_and_list_by_type(self, client, tenant):
        headers = tenant["headers"]
        today = date.today().isoformat()
        for payload in (
            {"type": "revenue", "date": today, "description": "Consulta avulsa", "category": "Clínica", "value": 150},
            {"type": "expense", "date": today, "description": "Aluguel", "category": "Fixas", "value": 50},
        ):
            assert client.post("/api/transactions", json=payload, headers=headers).status_code == 201

        body = client.get("/api/transactions", headers=headers).json()
        assert len(body["revenues"]) == 1
        assert len(body["expenses"]) == 1

        only_expenses = client.get("/api/transactions", params={"type": "expense"}, headers=headers).json()
        assert only_expenses["revenues"] == []
        assert only_expenses["expenses"][0]["description"] == "Aluguel"

    def test_update_and_delete(self, client, tenant):
        headers = tenant["headers"]
        txn = client.post(
            "/api/transactions",
            json={"type": "expense", "date": date.today().isoformat(), "description": "Luz", "value": 80},
            headers=headers,
        ).json()

        response = client.put(f"/api/transactions/{txn['id']}", json={"value": 95}, headers=headers)
        assert response.status_code == 200

        assert client.delete(f"/api/transactions/{txn['id']}", headers=headers).status_code == 200
        assert client.delete(f"/api/transactions/{txn['id']}", headers=headers).status_code == 404


class TestCashbook:
    def test_manual_entries_update_balance(self, client, tenant):
        headers = tenant["headers"]
        inflow = client.post(
            "/api/cashbook/entries",
            json={"entry_type": "inflow", "amount": 200, "description": "Venda balcão", "payment_method": "pix"},
            headers=headers,
        )
        assert inflow.status_code == 201
        assert inflow.json()["reference_type"] == "manual"
        assert inflow.json()["transaction_id"] is not None

        client.post(
            "/api/cashbook/entries",
            json={"entry_type": "outflow", "amount": 30, "description": "Troco"},
            headers=headers,
        )

        book = client.get("/api/cashbook", headers=headers).json()
        assert book["stats"]["total_inflow"] == 200
        assert book["stats"]["total_outflow"] == 30
        assert book["stats"]["balance"] == 170
        assert book["stats"]["inflow_month"] == 200
        assert {e["transaction_status"] for e in book["entries"]} == {"paid"}

        ledger = client.get("/api/transactions", headers=headers).json()
        assert [t["category"] for t in ledger["revenues"]] == ["Caixa"]
        assert [t["category"] for t in ledger["expenses"]] == ["Caixa"]

    def test_amount_must_be_positive(self, client, tenant):
        response = client.post(
            "/api/cashbook/entries",
            json={"entry_type": "inflow", "amount": 0, "description": "Nada"},
            headers=tenant["headers"],
        )

        assert response.status_code == 400
        assert response.json()["field"] == "amount"

    def test_deleting_transaction_removes_its_entry(self, client, tenant):
        headers = tenant["headers"]
        entry = client.post(
            "/api/cashbook/entries",
            json={"entry_type": "inflow", "amount": 10, "description": "Gorjeta"},
            headers=headers,
        ).json()

        client.delete(f"/api/transactions/{entry['transaction_id']}", headers=headers)

        assert client.get("/api/cashbook", headers=headers).json()["entries"] == []


class TestPayAppointment:
    def test_partial_then_full_payment(self, client, past_appointment):
        headers = past_appointment["tenant"]["headers"]
        appointment_id = past_appointment["appointment"]["id"]

        pending = client.get("/api/cashbook/pending-appointments", headers=headers).json()
        assert [(p["id"], p["remaining"]) for p in pending] == [(appointment_id, 100.0)]

        partial = client.post(
            f"/api/cashbook/appointments/{appointment_id}/pay",
            json={"amount": 40, "payment_method": "credit_card"},
            headers=headers,
        )
        assert partial.status_code == 200
        assert partial.json()["payment_status"] == "partial"
        assert partial.json()["remaining"] == 60

        too_much = client.post(
            f"/api/cashbook/appointments/{appointment_id}/pay", json={"amount": 100}, headers=headers
        )
        assert too_much.status_code == 400
        assert too_much.json()["field"] == "amount"

        rest = client.post(f"/api/cashbook/appointments/{appointment_id}/pay", headers=headers)
        assert rest.status_code == 200
        assert rest.json()["amount"] == 60
        assert rest.json()["payment_status"] == "paid"
        assert rest.json()["remaining"] == 0

        again = client.post(f"/api/cashbook/appointments/{appointment_id}/pay", headers=headers)
        assert again.status_code == 409
        assert again.json()["error"] == "Agendamento já está quitado."

        assert client.get("/api/cashbook/pending-appointments", headers=headers).json() == []

        book = client.get("/api/cashbook", headers=headers).json()
        assert book["stats"]["total_inflow"] == 100
        assert {e["reference_type"] for e in book["entries"]} == {"appointment"}
        assert {e["reference_id"] for e in book["entries"]} == {appointment_id}

        ledger = client.get("/api/transactions", params={"type": "revenue"}, headers=headers).json()
        assert sorted(t["value"] for t in ledger["revenues"]) == [40, 60]

    def test_cancelled_appointment_cannot_be_paid(self, client, past_appointment):
        headers = past_appointment["tenant"]["headers"]
        appointment_id = past_appointment["appointment"]["id"]
        client.put(f"/api/appointments/{appointment_id}", json={"status": "cancelled"}, headers=headers)

        response = client.post(f"/api/cashbook/appointments/{appointment_id}/pay", headers=headers)

        assert response.status_code == 400

    def test_unknown_appointment(self, client, tenant):
        response = client.post("/api/cashbook/appointments/999999/pay", headers=tenant["headers"])

        assert response.status_code == 404

    def test_dashboard_reflects_month_revenue(self, client, past_appointment):
        headers = past_appointment["tenant"]["headers"]
        appointment_id = past_appointment["appointment"]["id"]
        client.post(f"/api/cashbook/appointments/{appointment_id}/pay", headers=headers)

        stats = client.get("/api/dashboard-stats", headers=headers).json()["stats"]

        assert stats["monthlyRevenue"] == "R$ 100,00"
        assert stats["clients"] == 1


class TestConcurrency:
    def test_simultaneous_payments_settle_once(self, client, past_appointment):
        headers = past_appointment["tenant"]["headers"]
        url = f"/api/cashbook/appointments/{past_appointment['appointment']['id']}/pay"

        responses = send_concurrently(("POST", url, {"headers": headers}), ("POST", url, {"headers": headers}))

        assert sorted(r.status_code for r in responses) == [200, 409]
        book = client.get("/api/cashbook", headers=headers).json()
        assert book["stats"]["total_inflow"] == 100
        assert len(book["entries"]) == 1


class TestAtomicity:
    @pytest.fixture
    def broken_cash_entry(self, monkeypatch):
        """CashEntry rows that violate NOT NULL on transaction_id"""
        def _entry(**fields):
            fields["transaction_id"] = None
            return CashEntry(**fields)
        monkeypatch.setattr(finance, "CashEntry", _entry)
        return monkeypatch

    def test_failed_cash_entry_leaves_no_transaction(self, client, tenant, broken_cash_entry):
        async def _create(session):
            company = await session.get(Company, tenant["company_id"])
            payload = CashEntryCreate(entry_type="inflow", amount=50, description="Venda balcão")
            return await create_cash_entry(session, company, None, payload)

        with pytest.raises(IntegrityError):
            run_with_session(_create)
        broken_cash_entry.undo()

        ledger = client.get("/api/transactions", headers=tenant["headers"]).json()
        assert ledger["revenues"] == []
        assert client.get("/api/cashbook", headers=tenant["headers"]).json()["entries"] == []

    def test_failed_payment_leaves_balance_untouched(self, client, past_appointment, broken_cash_entry):
        headers = past_appointment["tenant"]["headers"]
        appointment_id = past_appointment["appointment"]["id"]

        async def _pay(session):
            company = await session.get(Company, past_appointment["tenant"]["company_id"])
            return await pay_appointment(session, company, None, appointment_id, AppointmentPaymentRequest())

        with pytest.raises(IntegrityError):
            run_with_session(_pay)
        broken_cash_entry.undo()

        assert client.get("/api/transactions", headers=headers).json()["revenues"] == []
        pending = client.get("/api/cashbook/pending-appointments", headers=headers).json()
        assert [(p["id"], p["remaining"]) for p in pending] == [(appointment_id, 100.0)]
