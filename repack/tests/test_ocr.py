import unittest

from repack.db import OcrResult
from repack.errors import OcrFailed, ProviderNotFound
from repack.ocr import MockOcrProvider, OcrService, clean_extracted_text


class _StaticProvider:
    name = "static"

    def extract_text(self, image):
        return OcrResult(
            extracted_text="  Label:  SN987654321  ", confidence=0.8, provider=self.name
        )


class _BrokenProvider:
    name = "broken"

    def extract_text(self, image):
        raise RuntimeError("engine crashed")


class CleanExtractedTextTests(unittest.TestCase):
    def test_known_formats(self):
        self.assertEqual(clean_extracted_text("SN123456789"), "SN123456789")
        self.assertEqual(clean_extracted_text("PKG-2024-001"), "PKG-2024")
        self.assertEqual(clean_extracted_text("INV-ABC-123"), "INV-ABC")
        self.assertEqual(clean_extracted_text("Tracking 1Z99887766"), "99887766")

    def test_falls_back_to_long_word_then_text(self):
        self.assertEqual(clean_extracted_text("box item x4B7q2z"), "x4B7q2z")
        self.assertEqual(clean_extracted_text("  no  code  "), "no code")


class OcrServiceTests(unittest.TestCase):
    def test_mock_provider_is_deterministic(self):
        service = OcrService()
        first = service.extract_serial_number(b"barcode image")
        second = service.extract_serial_number(b"barcode image")
        self.assertEqual(first.extracted_text, second.extracted_text)
        self.assertEqual(first.provider, "mock-ocr")
        self.assertEqual(first.confidence, 0.95)
        cleaned = {clean_extracted_text(s) for s in MockOcrProvider.samples}
        self.assertIn(first.extracted_text, cleaned)

    def test_registered_provider_output_is_cleaned(self):
        service = OcrService()
        service.register_provider(_StaticProvider())
        service.set_default_provider("static")
        result = service.extract_serial_number(b"img")
        self.assertEqual(result.extracted_text, "SN987654321")
        self.assertEqual(service.get_available_providers(), ["mock-ocr", "static"])

    def test_unknown_provider(self):
        with self.assertRaises(ProviderNotFound):
            OcrService(default_provider="tesseract")
        with self.assertRaises(ProviderNotFound):
            OcrService().extract_serial_number(b"img", provider_name="tesseract")

    def test_provider_errors_become_ocr_failed(self):
        service = OcrService()
        service.register_provider(_BrokenProvider())
        with self.assertRaises(OcrFailed) as ctx:
            service.extract_serial_number(b"img", provider_name="broken")
        self.assertIn("engine crashed", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
