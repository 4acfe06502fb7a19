"""
Clients, pets, services and inventory endpoints.
"""
from datetime import date

import pytest

from catalog import stock_status
from clients import pet_age
from tests.conftest import send_concurrently

pytestmark = pytest.mark.api


@pytest.mark.unit
class TestHelpers:
    def test_pet_age_counts_whole_years(self):
        today = date(2024, 6, 15)

        assert pet_age(date(2020, 6, 15), today) == "4 anos"
        assert pet_age(date(2020, 6, 16), today) == "3 anos"
        assert pet_age(None, today) == ""

    @pytest.mark.parametrize("stock,minimum,expected", [
        (0, 5, "critical"),
        (2, 5, "critical"),
        (5, 5, "low"),
        (6, 5, "normal"),
    ])
    def test_stock_status(self, stock, minimum, expected):
        assert stock_status(stock, minimum) == expected


class TestClients:
    def test_create_and_list(self, client, tenant, make_owner, make_pet):
        owner = make_owner(tenant["headers"], name="Bruno Lima", email="BRUNO@PetClinica.com.br")
        make_pet(tenant["headers"], owner["id"])

        response = client.get("/api/clients", params={"q": "bruno"}, headers=tenant["headers"])

        assert response.status_code == 200
        rows = response.json()
        assert [row["id"] for row in rows] == [owner["id"]]
        assert rows[0]["pets"] == 1
        assert rows[0]["lastVisit"] == ""
        assert rows[0]["status"] == "active"

    def test_clients_are_scoped_to_the_company(self, client, register_company, make_owner):
        first = register_company()
        second = register_company()
        owner = make_owner(first["headers"])

        assert client.get("/api/clients", headers=second["headers"]).json() == []
        response = client.put(f"/api/clients/{owner['id']}", json={"name": "X"}, headers=second["headers"])
        assert response.status_code == 404
        assert response.json()["error"] == "Cliente não encontrado."

    def test_update_and_delete(self, client, tenant, make_owner):
        owner = make_owner(tenant["headers"])

        response = client.put(
            f"/api/clients/{owner['id']}", json={"phone": "11911112222"}, headers=tenant["headers"]
        )
        assert response.status_code == 200
        assert response.json()["phone"] == "11911112222"

        assert client.delete(f"/api/clients/{owner['id']}", headers=tenant["headers"]).status_code == 200
        assert client.delete(f"/api/clients/{owner['id']}", headers=tenant["headers"]).status_code == 404

    def test_invalid_email_rejected(self, client, tenant):
        response = client.post("/api/clients", json={"name": "Ana", "email": "ana@"}, headers=tenant["headers"])

        assert response.status_code == 400
        assert response.json()["field"] == "email"


class TestPets:
    def test_pet_requires_owner_from_same_company(self, client, register_company, make_owner):
        first = register_company()
        second = register_company()
        foreign_owner = make_owner(first["headers"])

        response = client.post(
            "/api/pets",
            json={"client_id": foreign_owner["id"], "name": "Rex", "species": "Cão"},
            headers=second["headers"],
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Tutor inválido.", "code": "VALIDATION_ERROR", "field": "client_id"}

    def test_list_pets_with_owner_and_age(self, client, tenant, make_owner, make_pet):
        owner = make_owner(tenant["headers"], name="Carla Dias")
        pet = make_pet(tenant["headers"], owner["id"], name="Mia", species="Gato", birth_date="2015-01-01")

        response = client.get("/api/pets", params={"q": "carla"}, headers=tenant["headers"])

        rows = response.json()
        assert [row["id"] for row in rows] == [pet["id"]]
        assert rows[0]["owner"] == "Carla Dias"
        assert rows[0]["age"].endswith(" anos")
        assert rows[0]["status"] == "healthy"

    def test_pet_limit_of_plan(self, client, tenant, update_company, make_owner, plans, superadmin_headers):
        owner = make_owner(tenant["headers"])
        basic = plans["basic"]
        client.put(f"/api/admin/plans/{basic['id']}", json={"max_pets": 1}, headers=superadmin_headers)
        update_company(tenant["company_id"], plan_id=basic["id"], status="active")
        try:
            first = client.post(
                "/api/pets", json={"client_id": owner["id"], "name": "Rex", "species": "Cão"}, headers=tenant["headers"]
            )
            second = client.post(
                "/api/pets", json={"client_id": owner["id"], "name": "Bob", "species": "Cão"}, headers=tenant["headers"]
            )
        finally:
            client.put(
                f"/api/admin/plans/{basic['id']}", json={"max_pets": basic["max_pets"]}, headers=superadmin_headers
            )

        assert first.status_code == 201
        assert second.status_code == 403
        assert second.json()["code"] == "PLAN_LIMIT"


class TestServices:
    def test_service_row_shape(self, tenant, make_service):
        service = make_service(tenant["headers"], duration_minutes=45, commission_pct=10)

        assert service["duration"] == "45 min"
        assert service["duration_minutes"] == 45
        assert service["commission"] == 10

    def test_service_in_use_cannot_be_deleted(self, client, booking, make_appointment):
        make_appointment(booking)
        headers = booking["tenant"]["headers"]

        response = client.delete(f"/api/services/{booking['service']['id']}", headers=headers)

        assert response.status_code == 409


class TestProducts:
    def test_stock_movements(self, client, tenant):
        headers = tenant["headers"]
        product = client.post(
            "/api/products",
            json={"name": "Antipulgas", "category": "Medicamentos", "stock": 2, "min_stock": 5, "price": 79.9},
            headers=headers,
        ).json()
        assert product["status"] == "critical"
        assert product["minStock"] == 5

        response = client.post(
            f"/api/products/{product['id']}/stock", json={"movement_type": "in", "quantity": 10}, headers=headers
        )
        assert response.status_code == 200
        assert response.json()["stock"] == 12

        response = client.post(
            f"/api/products/{product['id']}/stock", json={"movement_type": "out", "quantity": 20}, headers=headers
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Estoque insuficiente."

        response = client.post(
            f"/api/products/{product['id']}/stock",
            json={"movement_type": "adjustment", "quantity": 5},
            headers=headers,
        )
        assert response.json()["stock"] == 5
        assert response.json()["status"] == "low"

    def test_simultaneous_withdrawals_never_overdraw(self, client, tenant):
        headers = tenant["headers"]
        product = client.post(
            "/api/products",
            json={"name": "Ração 1kg", "category": "Alimentos", "stock": 5, "min_stock": 1, "price": 40},
            headers=headers,
        ).json()
        url = f"/api/products/{product['id']}/stock"
        withdrawal = {"headers": headers, "json": {"movement_type": "out", "quantity": 3}}

        responses = send_concurrently(("POST", url, withdrawal), ("POST", url, withdrawal))

        assert sorted(r.status_code for r in responses) == [200, 400]
        stock = {p["id"]: p["stock"] for p in client.get("/api/products", headers=headers).json()}
        assert stock[product["id"]] == 2
