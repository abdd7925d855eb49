import tempfile
import unittest

from repack.config import Settings
from repack.errors import InvalidUpload, ProviderNotConfigured, ProviderNotFound
from repack.storage import (
    SERIAL,
    IncomingFile,
    InMemoryStorageProvider,
    LocalStorageProvider,
    S3StorageProvider,
    UploadOptions,
)
from repack.uploads import FileUploadService, build_upload_service


def _image(name="item.jpg", mimetype="image/jpeg", content=b"jpeg bytes"):
    return IncomingFile(original_name=name, mimetype=mimetype, content=content)


class FileUploadServiceTests(unittest.TestCase):
    def setUp(self):
        self.memory = InMemoryStorageProvider()
        self.service = FileUploadService(
            [self.memory, S3StorageProvider()], max_file_size=64
        )

    def test_first_provider_is_default(self):
        self.assertEqual(self.service.get_default_provider(), "memory")
        self.assertEqual(self.service.get_available_providers(), ["memory", "aws-s3"])
        self.assertEqual(self.service.get_configured_providers(), ["memory"])

    def test_local_provider_registered_when_none_given(self):
        service = FileUploadService()
        self.assertEqual(service.get_default_provider(), "local")
        self.assertIsInstance(service.get_provider(), LocalStorageProvider)

    def test_unknown_provider(self):
        with self.assertRaises(ProviderNotFound):
            self.service.get_provider("dropbox")
        with self.assertRaises(ProviderNotFound):
            self.service.set_default_provider("dropbox")

    def test_unconfigured_provider_does_not_fall_back(self):
        with self.assertRaises(ProviderNotConfigured) as ctx:
            self.service.upload_file(_image(), provider_name="aws-s3")
        self.assertEqual(ctx.exception.provider_name, "aws-s3")
        self.assertEqual(ctx.exception.http_status, 503)
        self.assertEqual(self.memory.stored_objects, {})

    def test_upload_and_delete_by_name(self):
        result = self.service.upload_file(
            _image(), UploadOptions(type=SERIAL), provider_name="memory"
        )
        self.assertEqual(result.provider, "memory")
        self.assertTrue(self.service.file_exists(result.url))
        self.assertEqual(self.service.read_file(result.url), b"jpeg bytes")
        self.service.delete_file(result.url)
        self.assertFalse(self.service.file_exists(result.url))

    def test_validation(self):
        with self.assertRaises(InvalidUpload):
            self.service.validate(_image(name="doc.pdf", mimetype="application/pdf"))
        with self.assertRaises(InvalidUpload):
            self.service.validate(_image(content=b""))
        with self.assertRaises(InvalidUpload) as ctx:
            self.service.validate(_image(content=b"x" * 65))
        self.assertEqual(ctx.exception.details["size"], 65)

    def test_upload_files_validates_before_uploading(self):
        files = [_image(), _image(name="notes.txt", mimetype="text/plain")]
        with self.assertRaises(InvalidUpload):
            self.service.upload_files(files)
        self.assertEqual(self.memory.stored_objects, {})

        results = self.service.upload_files([_image(), _image(name="b.png", mimetype="image/png")])
        self.assertEqual(len(results), 2)
        self.service.delete_files([r.url for r in results])
        self.assertEqual(self.memory.stored_objects, {})

    def test_get_file_url(self):
        url = self.service.get_file_url("serial-1.png", upload_type=SERIAL)
        self.assertEqual(
            url, "https://example.test/storage/uploads/serial-numbers/serial-1.png"
        )


class BuildUploadServiceTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def test_in_memory_backends_select_memory(self):
        settings = Settings(use_in_memory_backends=True, local_upload_dir=self.tmp.name)
        service = build_upload_service(settings)
        self.assertEqual(service.get_default_provider(), "memory")
        self.assertEqual(
            sorted(service.get_available_providers()),
            sorted(["local", "aws-s3", "google-cloud-storage", "cloudinary", "memory"]),
        )

    def test_local_provider_uses_base_url(self):
        settings = Settings(
            local_upload_dir=self.tmp.name, base_url="https://intake.example.com/"
        )
        service = build_upload_service(settings)
        self.assertEqual(service.get_default_provider(), "local")
        self.assertEqual(
            service.get_file_url("item-1.png"),
            "https://intake.example.com/uploads/item-images/item-1.png",
        )

    def test_warns_when_default_is_unconfigured(self):
        settings = Settings(storage_provider="aws-s3", local_upload_dir=self.tmp.name)
        with self.assertLogs("repack.uploads", level="WARNING"):
            service = build_upload_service(settings)
        self.assertEqual(service.get_default_provider(), "aws-s3")
        with self.assertRaises(ProviderNotConfigured):
            service.upload_file(_image())


if __name__ == "__main__":
    unittest.main()
