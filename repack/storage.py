"""
Upload providers for local disk, S3, Google Cloud Storage, Cloudinary and
in-memory testing.
"""

from __future__ import annotations

import io
import os
import re
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

import boto3
import cloudinary.api
import cloudinary.exceptions
import cloudinary.uploader
import requests
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from google.api_core import exceptions as gcs_exceptions
from google.cloud import storage as gcs

from repack.errors import DeleteFailed, ProviderNotConfigured, UploadFailed


SERIAL = "serial"
ITEM = "item"

_MISSING_KEY_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass
class IncomingFile:
    """An uploaded file, already read into memory."""

    original_name: str
    mimetype: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class UploadOptions:
    type: str = ITEM
    folder: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class UploadResult:
    url: str
    filename: str
    original_name: str
    mimetype: str
    size: int
    provider: str
    path: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    uploaded_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return asdict(self)


class UploadProvider(Protocol):
    """Defines the operations the intake service needs from a storage backend."""

    name: str

    def upload_file(
        self, file: IncomingFile, options: Optional[UploadOptions] = None
    ) -> UploadResult:
        ...

    def delete_file(self, url: str) -> None:
        ...

    def file_exists(self, url: str) -> bool:
        ...

    def read_file(self, url: str) -> bytes:
        ...

    def get_file_url(
        self, filename: str, options: Optional[UploadOptions] = None
    ) -> str:
        ...

    def is_configured(self) -> bool:
        ...


def resolve_folder(options: UploadOptions, root: Optional[str] = None) -> str:
    """Folder an upload lands in: the explicit option, else one per upload type."""
    if options.folder:
        return options.folder.strip("/")
    sub = "serial-numbers" if options.type == SERIAL else "item-images"
    return f"{root}/{sub}" if root else sub


def unique_filename(upload_type: str, original_name: str) -> str:
    extension = os.path.splitext(original_name or "")[1].lower()
    return f"{upload_type}-{uuid.uuid4().hex}{extension}"


def _string_metadata(metadata: dict) -> dict:
    return {str(key): str(value) for key, value in (metadata or {}).items()}


@dataclass
class LocalStorageProvider:
    """
    Stores files under ``root_dir`` and exposes them below ``public_url``.

    The app mounts ``root_dir`` as static files, so ``public_url`` is normally
    ``{base_url}/uploads``.
    """

    root_dir: str = "uploads"
    public_url: str = "http://localhost:8000/uploads"
    name: str = field(default="local", init=False)

    def __post_init__(self):
        self.public_url = self.public_url.rstrip("/")
        self._root = Path(self.root_dir).resolve()

    def is_configured(self) -> bool:
        return True

    def upload_file(
        self, file: IncomingFile, options: Optional[UploadOptions] = None
    ) -> UploadResult:
        options = options or UploadOptions()
        folder = resolve_folder(options)
        filename = unique_filename(options.type, file.original_name)
        target = self._root / folder / filename
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(file.content)
        except OSError as exc:
            raise UploadFailed(f"Local storage upload failed: {exc}") from exc
        return UploadResult(
            url=self.get_file_url(filename, options),
            filename=filename,
            original_name=file.original_name,
            mimetype=file.mimetype,
            size=file.size,
            provider=self.name,
            path=str(target),
            metadata=dict(options.metadata),
        )

    def _path_for_url(self, url: str) -> Optional[Path]:
        prefix = f"{self.public_url}/"
        if not url.startswith(prefix):
            return None
        target = (self._root / url[len(prefix):]).resolve()
        # Reject URLs that escape the upload root.
        if self._root not in target.parents:
            return None
        return target

    def delete_file(self, url: str) -> None:
        target = self._path_for_url(url)
        if target is None or not target.is_file():
            raise DeleteFailed(
                f"Local storage delete failed: {url} not found",
                details={"url": url},
            )
        try:
            target.unlink()
        except OSError as exc:
            raise DeleteFailed(f"Local storage delete failed: {exc}") from exc

    def file_exists(self, url: str) -> bool:
        target = self._path_for_url(url)
        return bool(target and target.is_file())

    def read_file(self, url: str) -> bytes:
        target = self._path_for_url(url)
        if target is None or not target.is_file():
            raise FileNotFoundError(url)
        return target.read_bytes()

    def get_file_url(
        self, filename: str, options: Optional[UploadOptions] = None
    ) -> str:
        folder = resolve_folder(options or UploadOptions())
        return f"{self.public_url}/{folder}/{filename}"


@dataclass
class S3StorageProvider:
    """
    AWS S3 (or any S3-compatible endpoint) provider.
    """

    bucket: Optional[str] = None
    region: str = "us-east-1"
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    endpoint_url: Optional[str] = None
    name: str = field(default="aws-s3", init=False)
    _client: Any = field(default=None, init=False, repr=False)

    def is_configured(self) -> bool:
        return bool(self.bucket and self.access_key_id and self.secret_access_key)

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self.endpoint_url,
                region_name=self.region,
                aws_access_key_id=self.access_key_id,
                aws_secret_access_key=self.secret_access_key,
                config=Config(signature_version="s3v4"),
            )
        return self._client

    @property
    def base_url(self) -> str:
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}"
        return f"https://{self.bucket}.s3.amazonaws.com"

    def _require_configured(self) -> None:
        if not self.is_configured():
            raise ProviderNotConfigured(self.name)

    def _key_for_url(self, url: str) -> Optional[str]:
        prefix = f"{self.base_url}/"
        if not url.startswith(prefix):
            return None
        return url[len(prefix):]

    def upload_file(
        self, file: IncomingFile, options: Optional[UploadOptions] = None
    ) -> UploadResult:
        self._require_configured()
        options = options or UploadOptions()
        folder = resolve_folder(options, root="uploads")
        filename = unique_filename(options.type, file.original_name)
        key = f"{folder}/{filename}"
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=file.content,
                ContentType=file.mimetype,
                Metadata=_string_metadata(options.metadata),
            )
        except (BotoCoreError, ClientError) as exc:
            raise UploadFailed(f"S3 upload failed: {exc}") from exc
        return UploadResult(
            url=f"{self.base_url}/{key}",
            filename=filename,
            original_name=file.original_name,
            mimetype=file.mimetype,
            size=file.size,
            provider=self.name,
            path=key,
            metadata=dict(options.metadata),
        )

    def _object_exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_KEY_CODES:
                return False
            raise
        return True

    def delete_file(self, url: str) -> None:
        self._require_configured()
        key = self._key_for_url(url)
        if key is None:
            raise DeleteFailed(
                f"S3 delete failed: {url} is not in bucket {self.bucket}",
                details={"url": url},
            )
        try:
            if not self._object_exists(key):
                raise DeleteFailed(
                    f"S3 delete failed: {key} not found", details={"url": url}
                )
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise DeleteFailed(f"S3 delete failed: {exc}") from exc

    def file_exists(self, url: str) -> bool:
        self._require_configured()
        key = self._key_for_url(url)
        if key is None:
            return False
        return self._object_exists(key)

    def read_file(self, url: str) -> bytes:
        self._require_configured()
        key = self._key_for_url(url)
        if key is None:
            raise FileNotFoundError(url)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_KEY_CODES:
                raise FileNotFoundError(url) from exc
            raise
        return response["Body"].read()

    def get_file_url(
        self, filename: str, options: Optional[UploadOptions] = None
    ) -> str:
        folder = resolve_folder(options or UploadOptions(), root="uploads")
        return f"{self.base_url}/{folder}/{filename}"


@dataclass
class GCSStorageProvider:
    """
    Google Cloud Storage provider. Credentials come from ``key_file`` when
    given, otherwise from the ambient application-default credentials.
    """

    bucket_name: Optional[str] = None
    project_id: Optional[str] = None
    key_file: Optional[str] = None
    name: str = field(default="google-cloud-storage", init=False)
    _client: Any = field(default=None, init=False, repr=False)

    def is_configured(self) -> bool:
        return bool(self.bucket_name and self.project_id)

    @property
    def client(self):
        if self._client is None:
            if self.key_file:
                self._client = gcs.Client.from_service_account_json(
                    self.key_file, project=self.project_id
                )
            else:
                self._client = gcs.Client(project=self.project_id)
        return self._client

    @property
    def base_url(self) -> str:
        return f"https://storage.googleapis.com/{self.bucket_name}"

    def _require_configured(self) -> None:
        if not self.is_configured():
            raise ProviderNotConfigured(self.name)

    def _blob_for_url(self, url: str):
        prefix = f"{self.base_url}/"
        if not url.startswith(prefix):
            return None
        return self.client.bucket(self.bucket_name).blob(url[len(prefix):])

    def upload_file(
        self, file: IncomingFile, options: Optional[UploadOptions] = None
    ) -> UploadResult:
        self._require_configured()
        options = options or UploadOptions()
        folder = resolve_folder(options, root="uploads")
        filename = unique_filename(options.type, file.original_name)
        destination = f"{folder}/{filename}"
        try:
            blob = self.client.bucket(self.bucket_name).blob(destination)
            if options.metadata:
                blob.metadata = _string_metadata(options.metadata)
            blob.upload_from_string(file.content, content_type=file.mimetype)
        except gcs_exceptions.GoogleAPIError as exc:
            raise UploadFailed(f"GCS upload failed: {exc}") from exc
        return UploadResult(
            url=f"{self.base_url}/{destination}",
            filename=filename,
            original_name=file.original_name,
            mimetype=file.mimetype,
            size=file.size,
            provider=self.name,
            path=destination,
            metadata=dict(options.metadata),
        )

    def delete_file(self, url: str) -> None:
        self._require_configured()
        blob = self._blob_for_url(url)
        if blob is None:
            raise DeleteFailed(
                f"GCS delete failed: {url} is not in bucket {self.bucket_name}",
                details={"url": url},
            )
        try:
            blob.delete()
        except gcs_exceptions.NotFound as exc:
            raise DeleteFailed(
                f"GCS delete failed: {blob.name} not found", details={"url": url}
            ) from exc
        except gcs_exceptions.GoogleAPIError as exc:
            raise DeleteFailed(f"GCS delete failed: {exc}") from exc

    def file_exists(self, url: str) -> bool:
        self._require_configured()
        blob = self._blob_for_url(url)
        return bool(blob is not None and blob.exists())

    def read_file(self, url: str) -> bytes:
        self._require_configured()
        blob = self._blob_for_url(url)
        if blob is None:
            raise FileNotFoundError(url)
        try:
            return blob.download_as_bytes()
        except gcs_exceptions.NotFound as exc:
            raise FileNotFoundError(url) from exc

    def get_file_url(
        self, filename: str, options: Optional[UploadOptions] = None
    ) -> str:
        folder = resolve_folder(options or UploadOptions(), root="uploads")
        return f"{self.base_url}/{folder}/{filename}"


_VERSION_SEGMENT = re.compile(r"^v\d+$")


@dataclass
class CloudinaryProvider:
    """
    Cloudinary image hosting. Credentials are passed on every call so several
    accounts can coexist in one process.
    """

    cloud_name: Optional[str] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    name: str = field(default="cloudinary", init=False)

    def is_configured(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)

    def _credentials(self) -> dict:
        return {
            "cloud_name": self.cloud_name,
            "api_key": self.api_key,
            "api_secret": self.api_secret,
        }

    def _require_configured(self) -> None:
        if not self.is_configured():
            raise ProviderNotConfigured(self.name)

    @property
    def base_url(self) -> str:
        return f"https://res.cloudinary.com/{self.cloud_name}/image/upload"

    def _public_id_for_url(self, url: str) -> Optional[str]:
        marker = f"res.cloudinary.com/{self.cloud_name}/image/upload/"
        if marker not in url:
            return None
        parts = url.split(marker, 1)[1].split("?", 1)[0].split("/")
        if parts and _VERSION_SEGMENT.match(parts[0]):
            parts = parts[1:]
        public_id, _ = os.path.splitext("/".join(parts))
        return public_id or None

    def upload_file(
        self, file: IncomingFile, options: Optional[UploadOptions] = None
    ) -> UploadResult:
        self._require_configured()
        options = options or UploadOptions()
        folder = resolve_folder(options, root="inventory")
        filename = unique_filename(options.type, file.original_name)
        stem = os.path.splitext(filename)[0]
        try:
            result = cloudinary.uploader.upload(
                io.BytesIO(file.content),
                folder=folder,
                public_id=stem,
                resource_type="image",
                context=_string_metadata(options.metadata) or None,
                **self._credentials(),
            )
        except cloudinary.exceptions.Error as exc:
            raise UploadFailed(f"Cloudinary upload failed: {exc}") from exc
        metadata = dict(options.metadata)
        metadata["public_id"] = result["public_id"]
        return UploadResult(
            url=result["secure_url"],
            filename=filename,
            original_name=file.original_name,
            mimetype=file.mimetype,
            size=file.size,
            provider=self.name,
            path=result["public_id"],
            metadata=metadata,
        )

    def delete_file(self, url: str) -> None:
        self._require_configured()
        public_id = self._public_id_for_url(url)
        if public_id is None:
            raise DeleteFailed(
                f"Cloudinary delete failed: {url} is not a {self.cloud_name} asset",
                details={"url": url},
            )
        try:
            result = cloudinary.uploader.destroy(
                public_id,
                resource_type="image",
                invalidate=True,
                **self._credentials(),
            )
        except cloudinary.exceptions.Error as exc:
            raise DeleteFailed(f"Cloudinary delete failed: {exc}") from exc
        if result.get("result") != "ok":
            raise DeleteFailed(
                f"Cloudinary delete failed: {result.get('result')}",
                details={"url": url, "public_id": public_id},
            )

    def file_exists(self, url: str) -> bool:
        self._require_configured()
        public_id = self._public_id_for_url(url)
        if public_id is None:
            return False
        try:
            cloudinary.api.resource(public_id, **self._credentials())
        except cloudinary.exceptions.NotFound:
            return False
        return True

    def read_file(self, url: str) -> bytes:
        self._require_configured()
        response = requests.get(url, timeout=30)
        if response.status_code == 404:
            raise FileNotFoundError(url)
        response.raise_for_status()
        return response.content

    def get_file_url(
        self, filename: str, options: Optional[UploadOptions] = None
    ) -> str:
        folder = resolve_folder(options or UploadOptions(), root="inventory")
        return f"{self.base_url}/{folder}/{filename}"


@dataclass
class InMemoryStorageProvider:
    """Test double for storage interactions."""

    base_url: str = "https://example.test/storage"
    stored_objects: dict = None
    name: str = field(default="memory", init=False)

    def __post_init__(self):
        if self.stored_objects is None:
            self.stored_objects = {}

    def is_configured(self) -> bool:
        return True

    def _key_for_url(self, url: str) -> Optional[str]:
        prefix = f"{self.base_url}/"
        return url[len(prefix):] if url.startswith(prefix) else None

    def upload_file(
        self, file: IncomingFile, options: Optional[UploadOptions] = None
    ) -> UploadResult:
        options = options or UploadOptions()
        folder = resolve_folder(options, root="uploads")
        filename = unique_filename(options.type, file.original_name)
        key = f"{folder}/{filename}"
        self.stored_objects[key] = file.content
        return UploadResult(
            url=f"{self.base_url}/{key}",
            filename=filename,
            original_name=file.original_name,
            mimetype=file.mimetype,
            size=file.size,
            provider=self.name,
            path=key,
            metadata=dict(options.metadata),
        )

    def delete_file(self, url: str) -> None:
        key = self._key_for_url(url)
        if key is None or key not in self.stored_objects:
            raise DeleteFailed(f"{url} not found", details={"url": url})
        del self.stored_objects[key]

    def file_exists(self, url: str) -> bool:
        return self._key_for_url(url) in self.stored_objects

    def read_file(self, url: str) -> bytes:
        key = self._key_for_url(url)
        if key is None or key not in self.stored_objects:
            raise FileNotFoundError(url)
        return self.stored_objects[key]

    def get_file_url(
        self, filename: str, options: Optional[UploadOptions] = None
    ) -> str:
        folder = resolve_folder(options or UploadOptions(), root="uploads")
        return f"{self.base_url}/{folder}/{filename}"
