"""Tests for the FastAPI REST endpoints."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from shipscan.api.app import create_app
from shipscan.extraction.fields import ExtractedFields
from shipscan.ocr.errors import OCRTransportError
from shipscan.ocr.gemini_client import OCRExtraction
from shipscan.utils.config import AppConfig

REGISTRATION = {
    "companyName": "Acme Trading",
    "contactPerson": "Sara Ali",
    "email": "Ops@Acme.Example",
    "phone": "+96522252186",
    "accountType": "Small Business",
    "estimatedMonthlyShipments": "51–200",
    "interestedFeatures": ["API Integration"],
}


def _extraction(fields: dict, file_name: str) -> OCRExtraction:
    return OCRExtraction(
        fields=ExtractedFields.from_mapping(fields),
        overall_confidence=0.95,
        file_name=file_name,
    )


@pytest.fixture
def client(app_config: AppConfig):
    """Test client with a running lifespan and a mocked vision model."""
    with TestClient(create_app(app_config)) as test_client:
        gemini = MagicMock()
        gemini.available = True
        gemini.extract = AsyncMock()
        test_client.app.state.services.processor.gemini = gemini
        yield test_client


@pytest.fixture
def gemini(client: TestClient) -> MagicMock:
    return client.app.state.services.processor.gemini


@pytest.fixture
def record_payload(label_fields: dict) -> dict:
    return {
        "clientName": "acme",
        "tracking": {"barcodeNumber": label_fields["barcodeNumber"]},
        "recipient": {"name": "Sara Ali"},
        "contents": [{"name": "Shirt", "qty": 2}, {"name": "Hat", "qty": 1, "price": "1.50"}],
    }


class TestHealthEndpoint:
    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["statusCode"] == 200
        assert data["isSuccess"] is True
        assert data["message"] == "healthy"
        assert data["databaseConnected"] is True
        assert data["tesseractFallback"] is False


class TestAuth:
    """Tests for the bearer-token guard on /api routes."""

    def test_token_required_when_configured(self, app_config: AppConfig) -> None:
        config = app_config.model_copy(
            update={"api": app_config.api.model_copy(update={"auth_tokens": ["secret"]})}
        )
        with TestClient(create_app(config)) as test_client:
            denied = test_client.get("/api/records")
            assert denied.status_code == 401
            assert denied.json()["isSuccess"] is False

            allowed = test_client.get(
                "/api/records", headers={"Authorization": "Bearer secret"}
            )
            assert allowed.status_code == 200

            assert test_client.get("/health").status_code == 200


class TestRegistration:
    """Tests for POST /form/submit."""

    def test_submit(self, client: TestClient) -> None:
        response = client.post("/form/submit", json=REGISTRATION)

        assert response.status_code == 201
        data = response.json()
        assert data["message"] == (
            "Registration submitted successfully! We'll contact you within 24 hours."
        )
        assert data["email"] == "ops@acme.example"
        assert data["status"] == "submitted"
        assert data["recordId"]

    def test_second_submission_conflicts(self, client: TestClient) -> None:
        first = client.post("/form/submit", json=REGISTRATION).json()
        response = client.post(
            "/form/submit", json=dict(REGISTRATION, email="ops@acme.example ")
        )

        assert response.status_code == 409
        data = response.json()
        assert data["message"] == (
            "This email has already completed registration. You cannot submit again."
        )
        assert data["recordId"] == first["recordId"]

    def test_concurrent_submission_conflicts(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        first = client.post("/form/submit", json=REGISTRATION).json()
        registrations = client.app.state.services.registrations
        real_find = registrations.find_submitted
        calls: list[str] = []

        def stale_then_real(email: str):
            # first lookup misses, as if the other request had not committed yet
            calls.append(email)
            return None if len(calls) == 1 else real_find(email)

        monkeypatch.setattr(registrations, "find_submitted", stale_then_real)

        response = client.post("/form/submit", json=REGISTRATION)

        assert response.status_code == 409
        assert response.json()["recordId"] == first["recordId"]

    def test_email_required(self, client: TestClient) -> None:
        response = client.post("/form/submit", json={"companyName": "Acme"})
        assert response.status_code == 400
        assert response.json()["message"] == "Business email is required"

    def test_missing_fields(self, client: TestClient) -> None:
        response = client.post(
            "/form/submit", json={"email": "a@b.example", "interestedFeatures": []}
        )

        assert response.status_code == 400
        data = response.json()
        assert data["message"] == "Missing required fields"
        assert "companyName" in data["missingFields"]
        assert "interestedFeatures (at least one required)" in data["missingFields"]

    def test_invalid_values(self, client: TestClient) -> None:
        response = client.post(
            "/form/submit", json=dict(REGISTRATION, accountType="Galactic")
        )
        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "accountType"


class TestOcrEndpoints:
    """Tests for the extraction endpoints."""

    def test_extract(
        self, client: TestClient, gemini: MagicMock, png_bytes: bytes, label_fields: dict
    ) -> None:
        gemini.extract.return_value = _extraction(label_fields, "a.png")

        response = client.post(
            "/api/ocr/extract", files={"file": ("a.png", png_bytes, "image/png")}
        )

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["barcodeNumber"] == label_fields["barcodeNumber"]
        assert result["source"] == "gemini"

    def test_extract_rejects_type(self, client: TestClient) -> None:
        response = client.post(
            "/api/ocr/extract", files={"file": ("a.gif", b"GIF89a", "image/gif")}
        )
        assert response.status_code == 400
        assert "Invalid file type" in response.json()["message"]

    def test_extract_upstream_failure(
        self, client: TestClient, gemini: MagicMock, png_bytes: bytes
    ) -> None:
        gemini.extract.side_effect = OCRTransportError("Gemini API error: 500", 500)
        response = client.post(
            "/api/ocr/extract", files={"file": ("a.png", png_bytes, "image/png")}
        )
        assert response.status_code == 502

    def test_batch_aggregates(
        self, client: TestClient, gemini: MagicMock, png_bytes: bytes, label_fields: dict
    ) -> None:
        async def extract(data, mime_type, file_name):
            return _extraction(label_fields, file_name)

        gemini.extract.side_effect = extract
        response = client.post(
            "/api/ocr/batch",
            files=[
                ("files", ("a.png", png_bytes, "image/png")),
                ("files", ("b.png", png_bytes, "image/png")),
                ("files", ("a.png", png_bytes, "image/png")),
            ],
        )

        data = response.json()
        assert response.status_code == 200
        assert data["usable"] == 2
        assert data["skipped"] == ["a.png"]
        assert data["nextStepAllowed"] is True
        assert data["aggregatedContents"] == [
            {"name": "shirt", "qty": 4, "price": "0.01"},
            {"name": "hat", "qty": 2, "price": "0.01"},
        ]

    def test_process_fields(self, client: TestClient, label_fields: dict) -> None:
        response = client.post(
            "/api/ocr/process",
            json={"fields": label_fields, "imageUrl": "/files/x.png", "clientName": "acme"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["record"]["additional"]["totalPieces"] == 3
        assert data["record"]["sender"]["email"] == "shipping@acme.example"
        assert data["overrides"] == {"totalPieces": False, "quantity": False, "price": False}


class TestScanEndpoint:
    def test_scan_saves_records(
        self, client: TestClient, gemini: MagicMock, png_bytes: bytes, label_fields: dict
    ) -> None:
        async def extract(data, mime_type, file_name):
            return _extraction(label_fields, file_name)

        gemini.extract.side_effect = extract
        response = client.post(
            "/api/scan",
            files=[("files", ("a.png", png_bytes, "image/png"))],
            data={"clientName": "acme"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["saves"][0]["saved"] is True
        image_url = data["imageUrls"][0]
        assert client.get(image_url).content == png_bytes

    def test_deleting_records_removes_unshared_images(
        self,
        client: TestClient,
        gemini: MagicMock,
        png_bytes: bytes,
        label_fields: dict,
        record_payload: dict,
    ) -> None:
        async def extract(data, mime_type, file_name):
            return _extraction(label_fields, file_name)

        gemini.extract.side_effect = extract
        scanned = client.post(
            "/api/scan", files=[("files", ("a.png", png_bytes, "image/png"))]
        ).json()
        image_url = scanned["imageUrls"][0]
        scanned_id = scanned["saves"][0]["record"]["id"]
        sharing = client.post("/api/records", json=dict(record_payload, imageUrl=image_url))
        sharing_id = sharing.json()["record"]["id"]

        assert client.delete(f"/api/records/{scanned_id}").status_code == 200
        assert client.get(image_url).status_code == 200

        assert client.delete(f"/api/records/{sharing_id}").status_code == 200
        assert client.get(image_url).status_code == 404

    def test_scan_nothing_usable(
        self, client: TestClient, gemini: MagicMock, png_bytes: bytes
    ) -> None:
        gemini.extract.side_effect = OCRTransportError("down")
        response = client.post(
            "/api/scan", files=[("files", ("a.png", png_bytes, "image/png"))]
        )
        assert response.status_code == 422
        assert response.json()["nextStepAllowed"] is False


class TestRecordEndpoints:
    """Tests for /api/records."""

    def test_crud(self, client: TestClient, record_payload: dict) -> None:
        created = client.post("/api/records", json=record_payload)
        assert created.status_code == 201
        record_id = created.json()["record"]["id"]

        fetched = client.get(f"/api/records/{record_id}")
        assert fetched.json()["record"]["contents"][1]["price"] == "1.50"

        patched = client.patch(
            f"/api/records/{record_id}", json={"recipient": {"phone": "+96555555555"}}
        )
        assert patched.status_code == 200
        assert patched.json()["record"]["recipient"]["name"] == "Sara Ali"
        assert patched.json()["record"]["recipient"]["phone"] == "+96555555555"

        assert client.delete(f"/api/records/{record_id}").status_code == 200
        assert client.get(f"/api/records/{record_id}").status_code == 404

    def test_create_without_contents(self, client: TestClient, record_payload: dict) -> None:
        response = client.post("/api/records", json=dict(record_payload, contents=[]))

        assert response.status_code == 400
        data = response.json()
        assert data["missingFields"] == ["contents"]
        assert data["isSuccess"] is False

    def test_create_schema_error(self, client: TestClient, record_payload: dict) -> None:
        response = client.post(
            "/api/records", json=dict(record_payload, contents=[{"name": "Hat", "qty": 0}])
        )
        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "contents.0.qty"

    def test_non_finite_confidence_rejected_before_storage(
        self, client: TestClient, record_payload: dict
    ) -> None:
        response = client.post(
            "/api/records",
            json=dict(record_payload, confidenceScores={"barcodeNumber": "NaN"}),
        )
        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "confidenceScores.barcodeNumber"

        listed = client.get("/api/records")
        assert listed.status_code == 200
        assert listed.json()["pagination"]["totalItems"] == 0

    def test_list_filters_and_paginates(self, client: TestClient, record_payload: dict) -> None:
        for barcode in ("111", "222", "333"):
            payload = dict(record_payload, tracking={"barcodeNumber": barcode})
            client.post("/api/records", json=payload)

        page = client.get("/api/records", params={"limit": 2, "page": 1}).json()
        assert len(page["records"]) == 2
        assert page["pagination"]["totalItems"] == 3
        assert page["next"]["page"] == 2

        by_barcode = client.get("/api/records", params={"barcode": "222"}).json()
        assert [r["tracking"]["barcodeNumber"] for r in by_barcode["records"]] == ["222"]

    def test_export_csv(self, client: TestClient, record_payload: dict) -> None:
        client.post("/api/records", json=record_payload)

        response = client.get("/api/records/export")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        lines = response.text.strip().splitlines()
        assert lines[0].startswith("id,clientName")
        assert len(lines) == 2

    def test_unknown_record(self, client: TestClient) -> None:
        assert client.patch("/api/records/nope", json={}).status_code == 404
        assert client.delete("/api/records/nope").status_code == 404


class TestClientEndpoints:
    """Tests for /api/clients."""

    def test_crud(self, client: TestClient) -> None:
        created = client.post("/api/clients", json={"name": "Acme"})
        assert created.status_code == 201
        client_id = created.json()["client"]["id"]

        listed = client.get("/api/clients").json()
        assert [c["name"] for c in listed["clients"]] == ["Acme"]

        renamed = client.patch(f"/api/clients/{client_id}", json={"name": "Acme Ltd"})
        assert renamed.json()["client"]["name"] == "Acme Ltd"

        assert client.delete(f"/api/clients/{client_id}").status_code == 200
        assert client.get(f"/api/clients/{client_id}").status_code == 404

    def test_duplicate_conflicts(self, client: TestClient) -> None:
        client.post("/api/clients", json={"name": "Acme"})
        response = client.post("/api/clients", json={"name": "acme"})
        assert response.status_code == 409

    def test_delete_with_records_conflicts(
        self, client: TestClient, record_payload: dict
    ) -> None:
        client_id = client.post("/api/clients", json={"name": "acme"}).json()["client"]["id"]
        client.post("/api/records", json=record_payload)

        response = client.delete(f"/api/clients/{client_id}")
        assert response.status_code == 409
        assert "still has 1 record" in response.json()["message"]

    def test_blank_name_rejected(self, client: TestClient) -> None:
        response = client.post("/api/clients", json={"name": ""})
        assert response.status_code == 400


class TestFiles:
    def test_unknown_file(self, client: TestClient) -> None:
        assert client.get("/files/file-1-abcde.png").status_code == 404
