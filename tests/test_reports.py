"""
CSV rendering and report exports.
"""
import csv
import io

import pytest

from reports import REPORT_FILENAMES, to_csv

pytestmark = pytest.mark.api


@pytest.mark.unit
class TestToCsv:
    def test_quotes_only_when_needed(self):
        content = to_csv(["Nome", "Obs"], [["Ana", 'Disse "oi", saiu'], ["Bia", None], ["Caio", "linha\nquebrada"]])

        assert content.splitlines()[0] == "Nome,Obs"
        assert content.splitlines()[1] == 'Ana,"Disse ""oi"", saiu"'
        assert content.splitlines()[2] == "Bia,"
        assert '"linha\nquebrada"' in content

    def test_empty_rows(self):
        assert to_csv(["A", "B"], []) == "A,B\n"


class TestExport:
    @pytest.mark.parametrize("report_type", sorted(REPORT_FILENAMES))
    def test_every_report_downloads(self, client, pro_tenant, report_type):
        response = client.get("/api/reports/export", params={"type": report_type}, headers=pro_tenant["headers"])

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert f'filename="{REPORT_FILENAMES[report_type]}"' in response.headers["content-disposition"]

    def test_clients_report_content(self, client, pro_tenant, make_owner, make_pet):
        owner = make_owner(pro_tenant["headers"], name="Silva, Ana", address='Rua "A", 10')
        make_pet(pro_tenant["headers"], owner["id"])

        response = client.get("/api/reports/export", params={"type": "clients"}, headers=pro_tenant["headers"])

        rows = list(csv.reader(io.StringIO(response.text)))
        assert rows[0] == ["Nome", "E-mail", "Telefone", "Endereço", "Pets"]
        assert rows[1][0] == "Silva, Ana"
        assert rows[1][3] == 'Rua "A", 10'
        assert rows[1][4] == "1"

    def test_users_report_lists_roles(self, client, pro_tenant):
        response = client.get("/api/reports/export", params={"type": "users"}, headers=pro_tenant["headers"])

        rows = list(csv.reader(io.StringIO(response.text)))
        assert rows[1][1] == pro_tenant["email"]
        assert rows[1][2] == "admin"

    def test_unknown_report_type(self, client, pro_tenant):
        response = client.get("/api/reports/export", params={"type": "pets"}, headers=pro_tenant["headers"])

        assert response.status_code == 400
        assert response.json()["error"] == "Tipo de relatório inválido."


class TestDashboard:
    def test_today_agenda_and_low_stock(self, client, tenant):
        headers = tenant["headers"]
        client.post(
            "/api/products",
            json={"name": "Shampoo", "category": "Higiene", "stock": 1, "min_stock": 4, "price": 30},
            headers=headers,
        )

        body = client.get("/api/dashboard-stats", headers=headers).json()

        assert body["stats"]["lowStock"] == 1
        assert body["stats"]["clients"] == 0
        assert body["stats"]["monthlyRevenue"] == "R$ 0,00"
        assert [item["name"] for item in body["lowStockItems"]] == ["Shampoo"]
        assert body["upcomingAppointments"] == []
