import dataclasses
import unittest
from unittest.mock import patch

from sqlalchemy.exc import SQLAlchemyError

from repack.db import (
    CredentialRecord,
    InMemoryDbClient,
    OcrResult,
    ParcelRecord,
    PostgresDbClient,
)
from repack.types import AuthProvider, ParcelStatus


class DbClientContract:
    """
    Shared checks run against every DbClient implementation.
    """

    def make_db(self):
        raise NotImplementedError

    def setUp(self):
        self.db = self.make_db()

    def _parcel(self, **kwargs):
        kwargs.setdefault("tracking_barcode_url", "https://example.test/storage/b.png")
        return self.db.save_parcel(ParcelRecord(**kwargs))

    def test_first_save_creates_second_updates(self):
        record = ParcelRecord(tracking_number="TRK-1", status=ParcelStatus.RETURNED)
        self.db.save_parcel(record)
        self.assertIsNotNone(record.id)
        self.assertEqual(record.status, ParcelStatus.PENDING)
        self.assertIsNotNone(record.created_at)

        record.parcel_image_urls = ["https://example.test/storage/a.png"]
        self.db.save_parcel(record)
        self.assertEqual([h.action for h in record.history], ["create", "update"])

        stored = self.db.get_parcel(record.id)
        self.assertEqual([h.action for h in stored.history], ["create", "update"])
        self.assertEqual(stored.history[0].snapshot["parcel_image_urls"], [])
        self.assertEqual(
            stored.history[1].snapshot["parcel_image_urls"],
            ["https://example.test/storage/a.png"],
        )
        self.assertNotIn("history", stored.history[0].snapshot)

    def test_history_cannot_be_rewritten(self):
        record = self._parcel(category="books")
        fetched = self.db.get_parcel(record.id)
        fetched.history[0].snapshot["category"] = "tampered"
        with self.assertRaises(dataclasses.FrozenInstanceError):
            fetched.history[0].action = "update"

        again = self.db.get_parcel(record.id)
        self.assertEqual(again.history[0].snapshot["category"], "books")
        self.assertEqual(len(again.history), 1)

    def test_ocr_result_round_trips(self):
        record = self._parcel()
        record.ocr_result = OcrResult(
            extracted_text="SN123456789", confidence=0.95, provider="mock-ocr"
        )
        record.status = ParcelStatus.PROCESSED
        self.db.save_parcel(record)

        stored = self.db.get_parcel(record.id)
        self.assertEqual(stored.ocr_result.extracted_text, "SN123456789")
        self.assertEqual(stored.status, ParcelStatus.PROCESSED)
        self.assertEqual(
            stored.history[-1].snapshot["ocr_result"]["provider"], "mock-ocr"
        )

    def test_list_filters_and_pagination(self):
        for index in range(3):
            self._parcel(category="electronics", tracking_number=f"EL-{index}")
        returned = self._parcel(category="books", created_by="user-1")
        returned.status = ParcelStatus.RETURNED
        self.db.save_parcel(returned)

        items, total = self.db.list_parcels(category="electronics", limit=2)
        self.assertEqual(total, 3)
        self.assertEqual(len(items), 2)

        items, total = self.db.list_parcels(status=ParcelStatus.RETURNED)
        self.assertEqual(total, 1)
        self.assertEqual(items[0].id, returned.id)

        items, total = self.db.list_parcels(created_by="user-1")
        self.assertEqual([r.id for r in items], [returned.id])

        items, total = self.db.list_parcels(tracking_number="el-1")
        self.assertEqual(total, 1)

        items, total = self.db.list_parcels(limit=10, offset=3)
        self.assertEqual(total, 4)
        self.assertEqual(len(items), 1)

    def test_search_matches_tracking_number_and_ocr_text(self):
        by_tracking = self._parcel(tracking_number="PKG-2024")
        by_ocr = self._parcel()
        by_ocr.ocr_result = OcrResult(
            extracted_text="INV-ABC", confidence=0.9, provider="mock-ocr"
        )
        self.db.save_parcel(by_ocr)

        self.assertEqual([r.id for r in self.db.search_parcels("pkg")], [by_tracking.id])
        self.assertEqual([r.id for r in self.db.search_parcels("inv-abc")], [by_ocr.id])
        self.assertEqual(self.db.search_parcels("nothing"), [])

    def test_delete(self):
        record = self._parcel()
        self.assertTrue(self.db.delete_parcel(record.id))
        self.assertIsNone(self.db.get_parcel(record.id))
        self.assertFalse(self.db.delete_parcel(record.id))

    def test_stats(self):
        self._parcel()
        failed = self._parcel()
        failed.status = ParcelStatus.FAILED
        self.db.save_parcel(failed)
        stats = self.db.parcel_stats()
        self.assertEqual(stats["total"], 2)
        self.assertEqual(stats["pending"], 1)
        self.assertEqual(stats["failed"], 1)
        self.assertEqual(stats["processed"], 0)

    def test_credential_lookups(self):
        local = CredentialRecord(email="ana@example.com", password_hash="hash")
        google = CredentialRecord(
            email="ben@example.com",
            provider=AuthProvider.GOOGLE,
            provider_user_id="g-1",
        )
        self.db.save_credential(local)
        self.db.save_credential(google)

        self.assertEqual(self.db.get_credential(local.id).email, "ana@example.com")
        self.assertEqual(
            self.db.find_credential_by_email("ana@example.com").id, local.id
        )
        self.assertIsNone(
            self.db.find_credential_by_email("ana@example.com", AuthProvider.GOOGLE)
        )
        self.assertEqual(
            self.db.find_credential_by_provider(AuthProvider.GOOGLE, "g-1").id,
            google.id,
        )
        self.assertEqual(
            self.db.find_credential_by_user_id(google.user_id).email,
            "ben@example.com",
        )
        self.assertIsNone(
            self.db.find_credential_by_user_id(google.user_id, AuthProvider.LOCAL)
        )

        local.password_reset_token = "reset-me"
        self.db.save_credential(local)
        self.assertEqual(self.db.find_credential_by_reset_token("reset-me").id, local.id)
        self.assertIsNone(self.db.find_credential_by_reset_token("other"))


class InMemoryDbClientTests(DbClientContract, unittest.TestCase):
    def make_db(self):
        return InMemoryDbClient()

    def test_reset_clears_everything(self):
        self._parcel()
        self.db.save_credential(CredentialRecord(email="ana@example.com"))
        self.db.reset()
        self.assertEqual(self.db.parcels, {})
        self.assertEqual(self.db.history, {})
        self.assertEqual(self.db.credentials, {})


class PostgresDbClientTests(DbClientContract, unittest.TestCase):
    """
    Uses SQLite via SQLAlchemy URL for fast/local testing of the Postgres client logic.
    """

    def make_db(self):
        return PostgresDbClient("sqlite+pysqlite:///:memory:")

    def test_requires_url(self):
        with self.assertRaises(ValueError):
            PostgresDbClient("")

    def test_failed_first_commit_leaves_record_new(self):
        record = ParcelRecord(tracking_number="TRK-9", location="Shelf B2")
        with patch(
            "sqlalchemy.orm.Session.commit",
            side_effect=SQLAlchemyError("database is locked"),
        ):
            with self.assertRaises(SQLAlchemyError):
                self.db.save_parcel(record)
        self.assertIsNone(record.id)

        self.db.save_parcel(record)
        self.assertEqual([h.action for h in record.history], ["create"])
        stored = self.db.get_parcel(record.id)
        self.assertEqual(stored.location, "Shelf B2")
        self.assertEqual(stored.history[0].snapshot["location"], "Shelf B2")


if __name__ == "__main__":
    unittest.main()
