"""
Serial / tracking number extraction from barcode photos.

Only a mock provider ships today; real engines register through
``OcrService.register_provider``.
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Optional, Protocol

from repack.db import OcrResult
from repack.errors import OcrFailed, ProviderNotFound

logger = logging.getLogger(__name__)

SERIAL_PATTERNS = (
    re.compile(r"[A-Z]{2,3}[-_]?\d{6,}"),
    re.compile(r"\d{8,}"),
    re.compile(r"[A-Z]{3,}-[A-Z0-9]{3,}"),
)


class OcrProvider(Protocol):
    name: str

    def extract_text(self, image: bytes) -> OcrResult:
        ...


class MockOcrProvider:
    """Returns a sample serial number picked from the image digest."""

    name = "mock-ocr"
    samples = (
        "SN123456789",
        "PKG-2024-001",
        "INV-ABC-123",
        "SERIAL-XYZ-789",
    )

    def extract_text(self, image: bytes) -> OcrResult:
        digest = hashlib.sha256(image).digest()
        text = self.samples[digest[0] % len(self.samples)]
        return OcrResult(extracted_text=text, confidence=0.95, provider=self.name)


def clean_extracted_text(text: str) -> str:
    cleaned = re.sub(r"\s+", " ", text or "").strip()
    for pattern in SERIAL_PATTERNS:
        match = pattern.search(cleaned)
        if match:
            return match.group(0)
    for word in cleaned.split(" "):
        if len(word) >= 6 and re.search(r"[A-Z0-9]", word):
            return word
    return cleaned


class OcrService:
    def __init__(self, default_provider: Optional[str] = None):
        self.providers: dict[str, OcrProvider] = {}
        self.register_provider(MockOcrProvider())
        self.default_provider = MockOcrProvider.name
        if default_provider:
            self.set_default_provider(default_provider)

    def register_provider(self, provider: OcrProvider) -> None:
        self.providers[provider.name] = provider

    def set_default_provider(self, provider_name: str) -> None:
        if provider_name not in self.providers:
            raise ProviderNotFound(provider_name)
        self.default_provider = provider_name

    def get_available_providers(self) -> list[str]:
        return list(self.providers)

    def get_provider(self, provider_name: Optional[str] = None) -> OcrProvider:
        name = provider_name or self.default_provider
        provider = self.providers.get(name)
        if provider is None:
            raise ProviderNotFound(name)
        return provider

    def extract_serial_number(
        self, image: bytes, provider_name: Optional[str] = None
    ) -> OcrResult:
        provider = self.get_provider(provider_name)
        name = provider.name
        try:
            result = provider.extract_text(image)
        except Exception as exc:
            raise OcrFailed(f"OCR processing failed: {exc}") from exc
        result.extracted_text = clean_extracted_text(result.extracted_text)
        logger.info(
            "OCR via %s extracted %r (confidence %.2f)",
            name,
            result.extracted_text,
            result.confidence,
        )
        return result
