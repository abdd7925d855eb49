"""
Provider registry that routes uploads and deletes to a storage backend.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from repack.config import Settings
from repack.errors import InvalidUpload, ProviderNotConfigured, ProviderNotFound
from repack.storage import (
    CloudinaryProvider,
    GCSStorageProvider,
    InMemoryStorageProvider,
    IncomingFile,
    LocalStorageProvider,
    S3StorageProvider,
    UploadOptions,
    UploadProvider,
    UploadResult,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024
DEFAULT_ALLOWED_MIME_TYPES = (
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
)


class FileUploadService:
    """
    Maps provider names to provider instances and picks one per call.

    A provider that is registered but not configured is never replaced by
    another one: using it raises ``ProviderNotConfigured``.
    """

    def __init__(
        self,
        providers: Optional[Iterable[UploadProvider]] = None,
        default_provider: Optional[str] = None,
        *,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        allowed_mime_types: Iterable[str] = DEFAULT_ALLOWED_MIME_TYPES,
    ):
        self.providers: dict[str, UploadProvider] = {}
        self.max_file_size = max_file_size
        self.allowed_mime_types = set(allowed_mime_types)

        providers = list(providers or [])
        if not providers:
            providers = [LocalStorageProvider()]
        for provider in providers:
            self.register_provider(provider)
        self.default_provider = providers[0].name
        if default_provider:
            self.set_default_provider(default_provider)

    def register_provider(self, provider: UploadProvider) -> None:
        self.providers[provider.name] = provider

    def remove_provider(self, provider_name: str) -> None:
        self.providers.pop(provider_name, None)

    def set_default_provider(self, provider_name: str) -> None:
        if provider_name not in self.providers:
            raise ProviderNotFound(provider_name)
        self.default_provider = provider_name

    def get_default_provider(self) -> str:
        return self.default_provider

    def get_provider(self, provider_name: Optional[str] = None) -> UploadProvider:
        name = provider_name or self.default_provider
        provider = self.providers.get(name)
        if provider is None:
            raise ProviderNotFound(name)
        return provider

    def get_available_providers(self) -> list[str]:
        return list(self.providers)

    def get_configured_providers(self) -> list[str]:
        return [
            name
            for name, provider in self.providers.items()
            if provider.is_configured()
        ]

    def is_provider_configured(self, provider_name: str) -> bool:
        provider = self.providers.get(provider_name)
        return provider.is_configured() if provider else False

    def _configured_provider(
        self, provider_name: Optional[str] = None
    ) -> UploadProvider:
        provider = self.get_provider(provider_name)
        if not provider.is_configured():
            raise ProviderNotConfigured(provider.name)
        return provider

    def validate(self, file: IncomingFile) -> None:
        if file.mimetype not in self.allowed_mime_types:
            raise InvalidUpload(
                "Only these file types are allowed: "
                + ", ".join(sorted(self.allowed_mime_types)),
                details={"filename": file.original_name, "mimetype": file.mimetype},
            )
        if file.size == 0:
            raise InvalidUpload(
                f"{file.original_name} is empty",
                details={"filename": file.original_name},
            )
        if file.size > self.max_file_size:
            raise InvalidUpload(
                f"{file.original_name} exceeds the {self.max_file_size} byte limit",
                details={"filename": file.original_name, "size": file.size},
            )

    def upload_file(
        self,
        file: IncomingFile,
        options: Optional[UploadOptions] = None,
        provider_name: Optional[str] = None,
    ) -> UploadResult:
        provider = self._configured_provider(provider_name)
        self.validate(file)
        result = provider.upload_file(file, options or UploadOptions())
        logger.info(
            "Uploaded %s (%d bytes) via %s to %s",
            file.original_name,
            file.size,
            provider.name,
            result.url,
        )
        return result

    def upload_files(
        self,
        files: Iterable[IncomingFile],
        options: Optional[UploadOptions] = None,
        provider_name: Optional[str] = None,
    ) -> list[UploadResult]:
        files = list(files)
        # Validate everything first so a bad file does not leave earlier ones behind.
        self._configured_provider(provider_name)
        for file in files:
            self.validate(file)
        return [self.upload_file(file, options, provider_name) for file in files]

    def delete_file(self, url: str, provider_name: Optional[str] = None) -> None:
        provider = self._configured_provider(provider_name)
        provider.delete_file(url)
        logger.info("Deleted %s via %s", url, provider.name)

    def delete_files(
        self, urls: Iterable[str], provider_name: Optional[str] = None
    ) -> None:
        for url in urls:
            self.delete_file(url, provider_name)

    def file_exists(self, url: str, provider_name: Optional[str] = None) -> bool:
        return self._configured_provider(provider_name).file_exists(url)

    def read_file(self, url: str, provider_name: Optional[str] = None) -> bytes:
        return self._configured_provider(provider_name).read_file(url)

    def get_file_url(
        self,
        filename: str,
        upload_type: str = "item",
        provider_name: Optional[str] = None,
    ) -> str:
        return self.get_provider(provider_name).get_file_url(
            filename, UploadOptions(type=upload_type)
        )


def build_upload_service(settings: Settings) -> FileUploadService:
    """Register every provider from settings and select the configured default."""
    providers: list[UploadProvider] = [
        LocalStorageProvider(
            root_dir=settings.local_upload_dir,
            public_url=f"{settings.base_url.rstrip('/')}/uploads",
        ),
        S3StorageProvider(
            bucket=settings.aws_s3_bucket_name,
            region=settings.aws_region,
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
            endpoint_url=settings.aws_endpoint_url,
        ),
        GCSStorageProvider(
            bucket_name=settings.gcs_bucket_name,
            project_id=settings.google_cloud_project_id,
            key_file=settings.google_cloud_key_file,
        ),
        CloudinaryProvider(
            cloud_name=settings.cloudinary_cloud_name,
            api_key=settings.cloudinary_api_key,
            api_secret=settings.cloudinary_api_secret,
        ),
    ]
    default_provider = settings.storage_provider
    if settings.use_in_memory_backends:
        providers.append(InMemoryStorageProvider())
        default_provider = "memory"

    service = FileUploadService(
        providers,
        default_provider=default_provider,
        max_file_size=settings.max_upload_size,
        allowed_mime_types=settings.allowed_mime_types,
    )
    if not service.is_provider_configured(service.default_provider):
        logger.warning(
            "Default storage provider %s is not configured; uploads will fail",
            service.default_provider,
        )
    return service
