import unittest

from fastapi.testclient import TestClient

from repack.app import create_app
from repack.auth import LoginRateLimiter
from repack.db import InMemoryDbClient
from repack.dependencies import (
    get_db_client,
    get_login_rate_limiter,
    get_queue_client,
    get_upload_service,
)
from repack.queue import InMemoryJobQueue
from repack.storage import InMemoryStorageProvider, S3StorageProvider
from repack.uploads import FileUploadService

PASSWORD = "Parcel#2024"


class BackendApiTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.storage = InMemoryStorageProvider()
        self.uploads = FileUploadService([self.storage, S3StorageProvider()])
        self.queue = InMemoryJobQueue()
        self.limiter = LoginRateLimiter(max_attempts=3, window_seconds=60)

        app = create_app()
        app.dependency_overrides[get_db_client] = lambda: self.db
        app.dependency_overrides[get_upload_service] = lambda: self.uploads
        app.dependency_overrides[get_queue_client] = lambda: self.queue
        app.dependency_overrides[get_login_rate_limiter] = lambda: self.limiter
        self.client = TestClient(app)

    def _register(self, email="clerk@example.com"):
        response = self.client.post(
            "/api/auth/register",
            json={
                "email": email,
                "password": PASSWORD,
                "first_name": "Sam",
                "last_name": "Clerk",
            },
        )
        self.assertEqual(response.status_code, 201)
        return {"Authorization": f"Bearer {response.json()['access_token']}"}

    def _create_parcel(self, headers, **form):
        files = [
            ("tracking_barcode", ("barcode.png", b"barcode pixels", "image/png")),
            ("parcel_images", ("front.jpg", b"front photo", "image/jpeg")),
            ("parcel_images", ("back.jpg", b"back photo", "image/jpeg")),
        ]
        return self.client.post("/api/parcels", files=files, data=form, headers=headers)

    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_register_and_me(self):
        headers = self._register()
        response = self.client.get("/api/auth/me", headers=headers)
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["email"], "clerk@example.com")
        self.assertEqual(payload["provider"], "LOCAL")
        self.assertNotIn("password_hash", payload)

    def test_duplicate_registration(self):
        self._register()
        response = self.client.post(
            "/api/auth/register",
            json={"email": "clerk@example.com", "password": PASSWORD},
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "EMAIL_ALREADY_REGISTERED")

    def test_missing_token(self):
        response = self.client.get("/api/parcels")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "MISSING_TOKEN")

    def test_login_and_rate_limit(self):
        self._register()
        response = self.client.post(
            "/api/auth/login", json={"email": "clerk@example.com", "password": PASSWORD}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["token_type"], "bearer")

        for _ in range(3):
            response = self.client.post(
                "/api/auth/login",
                json={"email": "clerk@example.com", "password": "Wrong#Pass1"},
            )
            self.assertEqual(response.status_code, 401)
        response = self.client.post(
            "/api/auth/login", json={"email": "clerk@example.com", "password": PASSWORD}
        )
        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.json()["error"]["code"], "TOO_MANY_ATTEMPTS")
        self.assertIn("Retry-After", response.headers)

    def test_password_reset_flow(self):
        self._register()
        response = self.client.post(
            "/api/auth/password-reset/request", json={"email": "clerk@example.com"}
        )
        self.assertEqual(response.json(), {"status": "ok"})
        unknown = self.client.post(
            "/api/auth/password-reset/request", json={"email": "nobody@example.com"}
        )
        self.assertEqual(unknown.json(), {"status": "ok"})

        token = self.db.find_credential_by_email("clerk@example.com").password_reset_token
        response = self.client.post(
            "/api/auth/password-reset/confirm",
            json={"token": token, "new_password": "Fresh#Pass5"},
        )
        self.assertEqual(response.status_code, 200)
        response = self.client.post(
            "/api/auth/login",
            json={"email": "clerk@example.com", "password": "Fresh#Pass5"},
        )
        self.assertEqual(response.status_code, 200)

        response = self.client.post(
            "/api/auth/password-reset/confirm",
            json={"token": "bogus", "new_password": "Fresh#Pass5"},
        )
        self.assertEqual(response.status_code, 400)

    def test_deactivate(self):
        headers = self._register()
        response = self.client.post("/api/auth/deactivate", headers=headers)
        self.assertEqual(response.status_code, 200)
        response = self.client.get("/api/auth/me", headers=headers)
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "ACCOUNT_INACTIVE")

    def test_create_parcel_runs_ocr_in_background(self):
        headers = self._register()
        response = self._create_parcel(headers, category="electronics", quantity="2")
        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["status"], "pending")
        self.assertEqual(payload["quantity"], 2)
        self.assertEqual(payload["storage_provider"], "memory")
        self.assertEqual(len(payload["parcel_image_urls"]), 2)
        self.assertEqual([h["action"] for h in payload["history"]], ["create", "update"])
        self.assertEqual(len(self.storage.stored_objects), 3)

        response = self.client.get(f"/api/parcels/{payload['id']}", headers=headers)
        self.assertEqual(response.status_code, 200)
        parcel = response.json()
        self.assertEqual(parcel["status"], "processed")
        self.assertEqual(parcel["ocr_result"]["provider"], "mock-ocr")
        self.assertEqual(parcel["tracking_number"], parcel["ocr_result"]["extracted_text"])

    def test_create_parcel_rejections(self):
        headers = self._register()
        response = self.client.post(
            "/api/parcels",
            files=[("tracking_barcode", ("label.pdf", b"%PDF", "application/pdf"))],
            headers=headers,
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "INVALID_UPLOAD")

        response = self._create_parcel(headers, provider="aws-s3")
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["error"]["code"], "PROVIDER_NOT_CONFIGURED")

        response = self._create_parcel(headers, provider="dropbox")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "PROVIDER_NOT_FOUND")
        self.assertEqual(self.storage.stored_objects, {})

    def test_parcel_lifecycle(self):
        headers = self._register()
        parcel_id = self._create_parcel(headers, category="books").json()["id"]
        self._create_parcel(headers, category="toys")

        response = self.client.get(
            "/api/parcels", params={"category": "books"}, headers=headers
        )
        listing = response.json()
        self.assertEqual(listing["total"], 1)
        self.assertEqual(listing["items"][0]["id"], parcel_id)

        response = self.client.patch(
            f"/api/parcels/{parcel_id}",
            json={
                "description": "Hardcover set",
                "tracking_number": "BK-42",
                "location": "Aisle 4",
            },
            headers=headers,
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["description"], "Hardcover set")
        self.assertEqual(response.json()["location"], "Aisle 4")
        response = self.client.patch(
            f"/api/parcels/{parcel_id}", json={}, headers=headers
        )
        self.assertEqual(response.status_code, 400)

        response = self.client.get(
            "/api/parcels/search", params={"q": "bk-42"}, headers=headers
        )
        self.assertEqual([p["id"] for p in response.json()], [parcel_id])

        response = self.client.post(f"/api/parcels/{parcel_id}/return", headers=headers)
        self.assertEqual(response.json()["status"], "returned")

        response = self.client.post(
            f"/api/parcels/{parcel_id}/ocr",
            params={"provider": "bogus-ocr"},
            headers=headers,
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "PROVIDER_NOT_FOUND")
        response = self.client.get(f"/api/parcels/{parcel_id}", headers=headers)
        self.assertEqual(response.json()["status"], "returned")

        response = self.client.post(f"/api/parcels/{parcel_id}/ocr", headers=headers)
        self.assertEqual(response.json()["status"], "processed")
        self.assertEqual(response.json()["tracking_number"], "BK-42")

        stats = self.client.get("/api/parcels/stats", headers=headers).json()
        self.assertEqual(stats["total"], 2)
        self.assertEqual(stats["processed"], 2)

        response = self.client.delete(f"/api/parcels/{parcel_id}", headers=headers)
        self.assertEqual(response.status_code, 204)
        response = self.client.get(f"/api/parcels/{parcel_id}", headers=headers)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "RECORD_NOT_FOUND")
        self.assertEqual(len(self.storage.stored_objects), 3)

    def test_storage_providers(self):
        headers = self._register()
        response = self.client.get("/api/storage/providers", headers=headers)
        self.assertEqual(
            response.json(),
            {"available": ["memory", "aws-s3"], "configured": ["memory"], "default": "memory"},
        )


if __name__ == "__main__":
    unittest.main()
