"""
Medical records and file attachments.
"""
import base64
from datetime import datetime, timedelta

import pytest

from file_utils import decode_data_url, safe_file_name
from errors import ApiError

pytestmark = pytest.mark.api


def _data_url(content: bytes, mime: str = "text/plain") -> str:
    return f"data:{mime};base64,{base64.b64encode(content).decode()}"


@pytest.mark.unit
class TestFileHelpers:
    def test_decode_data_url(self):
        mime, content = decode_data_url(_data_url(b"hello"), 1024)

        assert mime == "text/plain"
        assert content == b"hello"

    @pytest.mark.parametrize("data_url", ["hello", "data:text/plain;base64,@@@", "data:text/plain;base64,"])
    def test_malformed_data_urls(self, data_url):
        with pytest.raises(ApiError) as exc:
            decode_data_url(data_url, 1024)
        assert exc.value.status_code == 400
        assert exc.value.field == "data_url"

    def test_size_limit(self):
        with pytest.raises(ApiError):
            decode_data_url(_data_url(b"x" * 2048), 1024)

    def test_safe_file_name(self):
        assert safe_file_name("../../etc/passwd") == "passwd"
        assert safe_file_name("exame de sangue.pdf") == "exame_de_sangue.pdf"
        assert safe_file_name("...") == "arquivo"


class TestMedicalRecords:
    def test_create_list_update_delete(self, client, booking):
        headers = booking["tenant"]["headers"]
        pet_id = booking["pet"]["id"]

        response = client.post(
            "/api/medical-records",
            json={"pet_id": pet_id, "weight_kg": 28.5, "temperature_c": 38.6, "diagnosis": "Otite"},
            headers=headers,
        )
        assert response.status_code == 201
        record = response.json()
        assert record["pet_name"] == "Thor"
        assert record["client_name"] == booking["owner"]["name"]

        rows = client.get("/api/medical-records", params={"pet_id": pet_id}, headers=headers).json()
        assert [r["id"] for r in rows] == [record["id"]]
        assert client.get("/api/medical-records", params={"q": "otite"}, headers=headers).json()[0]["id"] == record["id"]

        response = client.put(
            f"/api/medical-records/{record['id']}", json={"treatment": "Antibiótico 7 dias"}, headers=headers
        )
        assert response.json()["treatment"] == "Antibiótico 7 dias"
        assert response.json()["diagnosis"] == "Otite"

        assert client.delete(f"/api/medical-records/{record['id']}", headers=headers).json() == {"ok": True}
        response = client.get(f"/api/medical-records/{record['id']}", headers=headers)
        assert response.status_code == 404
        assert response.json()["error"] == "Prontuário não encontrado."

    def test_appointment_must_belong_to_pet(self, client, booking, make_pet, make_appointment):
        headers = booking["tenant"]["headers"]
        other_pet = make_pet(headers, booking["owner"]["id"], name="Mia", species="Gato")
        appointment = make_appointment(booking, when=datetime.utcnow() - timedelta(hours=1))

        response = client.post(
            "/api/medical-records",
            json={"pet_id": other_pet["id"], "appointment_id": appointment["id"]},
            headers=headers,
        )
        assert response.status_code == 400
        assert response.json()["field"] == "appointment_id"

        response = client.post(
            "/api/medical-records",
            json={"pet_id": booking["pet"]["id"], "appointment_id": appointment["id"]},
            headers=headers,
        )
        assert response.status_code == 201
        assert response.json()["appointment_id"] == appointment["id"]

    def test_pet_of_another_company(self, client, booking, register_company):
        other = register_company()

        response = client.post("/api/medical-records", json={"pet_id": booking["pet"]["id"]}, headers=other["headers"])

        assert response.status_code == 400
        assert response.json() == {"error": "Pet inválido.", "code": "VALIDATION_ERROR", "field": "pet_id"}

    def test_temperature_out_of_range(self, client, booking):
        response = client.post(
            "/api/medical-records",
            json={"pet_id": booking["pet"]["id"], "temperature_c": 60},
            headers=booking["tenant"]["headers"],
        )

        assert response.status_code == 400
        assert response.json()["field"] == "temperature_c"


class TestAttachments:
    def test_upload_list_download_delete(self, client, booking):
        headers = booking["tenant"]["headers"]
        pet_id = booking["pet"]["id"]

        response = client.post(
            "/api/attachments",
            json={
                "entity_type": "pet",
                "entity_id": pet_id,
                "file_name": "carteira vacinas.txt",
                "data_url": _data_url(b"V10 em dia"),
            },
            headers=headers,
        )
        assert response.status_code == 201
        attachment = response.json()
        assert attachment["size_bytes"] == len(b"V10 em dia")
        assert attachment["file_url"].startswith("/uploads/attachments/")

        listed = client.get("/api/attachments", params={"entity_type": "pet", "entity_id": pet_id}, headers=headers)
        assert [a["id"] for a in listed.json()] == [attachment["id"]]

        download = client.get(attachment["file_url"])
        assert download.status_code == 200
        assert download.content == b"V10 em dia"

        assert client.delete(f"/api/attachments/{attachment['id']}", headers=headers).json() == {"ok": True}
        assert client.get(attachment["file_url"]).status_code == 404
        assert client.delete(f"/api/attachments/{attachment['id']}", headers=headers).status_code == 404

    def test_unsupported_type(self, client, booking):
        response = client.post(
            "/api/attachments",
            json={
                "entity_type": "pet",
                "entity_id": booking["pet"]["id"],
                "file_name": "script.sh",
                "data_url": _data_url(b"echo hi", "application/x-sh"),
            },
            headers=booking["tenant"]["headers"],
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Tipo de arquivo não suportado."

    def test_unknown_entity(self, client, tenant):
        response = client.post(
            "/api/attachments",
            json={"entity_type": "client", "entity_id": 999999, "file_name": "a.txt", "data_url": _data_url(b"a")},
            headers=tenant["headers"],
        )

        assert response.status_code == 404
