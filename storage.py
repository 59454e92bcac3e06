import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

import aioboto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from exceptions import StorageServiceError
from observability.logging import get_logger
from security.path_validation import secure_join
from utils.security import redact_secrets_from_text

logger = get_logger(__name__)

RECEIPTS_FOLDER = "receipts"


class IStorageProvider(ABC):
    # "bucket" or "disk"
    kind: str = "disk"
    # True when save_file returns a URL a browser can fetch directly
    public_urls: bool = False

    @abstractmethod
    async def save_file(
        self,
        file_content: bytes,
        filename: str,
        subfolder: str = RECEIPTS_FOLDER,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        pass

    @abstractmethod
    async def delete_file(self, file_path: str) -> None:
        pass


class DiskStorageProvider(IStorageProvider):
    """Local filesystem storage for development."""

    kind = "disk"
    public_urls = False

    def __init__(self, storage_path: str):
        self.storage_root = Path(storage_path)
        self.storage_root.mkdir(parents=True, exist_ok=True)

    async def save_file(
        self,
        file_content: bytes,
        filename: str,
        subfolder: str = RECEIPTS_FOLDER,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        file_path = secure_join(self.storage_root, subfolder, filename)
        if file_path is None:
            raise StorageServiceError("Refusing to write outside the storage root")

        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, "wb") as buffer:
                buffer.write(file_content)
        except OSError as exc:
            raise StorageServiceError("Failed to write file to local storage") from exc

        return f"/uploads/{subfolder}/{file_path.name}"

    async def delete_file(self, file_path: str) -> None:
        # file_path is like /uploads/receipts/filename
        if not file_path.startswith("/uploads/"):
            return
        parts = file_path[len("/uploads/"):].split("/")
        full_path = secure_join(self.storage_root, *parts)
        if full_path is not None and full_path.exists():
            full_path.unlink()


class BucketStorageProvider(IStorageProvider):
    """
    S3-compatible object storage (AWS S3, Cloudflare R2).

    Environment variables:
    - BUCKET_NAME, BUCKET_ACCESS_KEY_ID, BUCKET_SECRET_ACCESS_KEY: required
    - BUCKET_ENDPOINT_URL: required for R2 and other non-AWS providers
    - BUCKET_REGION: default "auto"
    - BUCKET_PUBLIC_URL: public base URL (CDN or R2 public domain)
    """

    kind = "bucket"

    def __init__(self):
        self.endpoint_url = os.getenv("BUCKET_ENDPOINT_URL")
        self.region_name = os.getenv("BUCKET_REGION", "auto")
        self.bucket_name = os.getenv("BUCKET_NAME")
        self.access_key = os.getenv("BUCKET_ACCESS_KEY_ID")
        self.secret_key = os.getenv("BUCKET_SECRET_ACCESS_KEY")
        self.public_url = (os.getenv("BUCKET_PUBLIC_URL") or "").rstrip("/") or None

        if not all([self.bucket_name, self.access_key, self.secret_key]):
            raise StorageServiceError(
                "Missing bucket configuration environment variables",
                error_code="STORAGE_NOT_CONFIGURED",
            )

        self.public_urls = True
        self.session = aioboto3.Session()

    def _client(self):
        return self.session.client(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=self.access_key,
            aws_secret_access_key=self.secret_key,
            region_name=self.region_name,
            config=Config(signature_version="s3v4"),
        )

    def build_url(self, object_key: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{object_key}"
        if self.endpoint_url:
            logger.warning(
                "BUCKET_PUBLIC_URL not set; returning the API endpoint URL, which may not be publicly readable"
            )
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket_name}/{object_key}"
        return f"https://{self.bucket_name}.s3.{self.region_name}.amazonaws.com/{object_key}"

    async def save_file(
        self,
        file_content: bytes,
        filename: str,
        subfolder: str = RECEIPTS_FOLDER,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        object_key = f"{subfolder}/{os.path.basename(filename)}"
        try:
            async with self._client() as s3:
                await s3.put_object(
                    Bucket=self.bucket_name,
                    Key=object_key,
                    Body=file_content,
                    ContentType=content_type or "application/octet-stream",
                    Metadata=metadata or {},
                )
        except (BotoCoreError, ClientError) as exc:
            logger.error(
                "Upload to bucket failed",
                extra={
                    "bucket": self.bucket_name,
                    "key": object_key,
                    "error_type": type(exc).__name__,
                    "error": redact_secrets_from_text(str(exc))[:300],
                },
            )
            raise StorageServiceError("Failed to upload file to storage") from exc

        return self.build_url(object_key)

    def key_from_url(self, file_url: str) -> Optional[str]:
        prefixes = []
        if self.public_url:
            prefixes.append(f"{self.public_url}/")
        if self.endpoint_url:
            prefixes.append(f"{self.endpoint_url.rstrip('/')}/{self.bucket_name}/")
        prefixes.append(f"https://{self.bucket_name}.s3.{self.region_name}.amazonaws.com/")
        for prefix in prefixes:
            if file_url.startswith(prefix):
                return file_url[len(prefix):]
        return None

    async def delete_file(self, file_path: str) -> None:
        key = self.key_from_url(file_path)
        if key is None:
            return
        try:
            async with self._client() as s3:
                await s3.delete_object(Bucket=self.bucket_name, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageServiceError("Failed to delete file from storage") from exc


def _bucket_configured() -> bool:
    return all(
        os.getenv(name)
        for name in ("BUCKET_NAME", "BUCKET_ACCESS_KEY_ID", "BUCKET_SECRET_ACCESS_KEY")
    )


def _local_storage_allowed() -> bool:
    if os.getenv("ENVIRONMENT", "development") != "production":
        return True
    return os.getenv("ALLOW_LOCAL_STORAGE", "false").lower() == "true"


def create_storage_provider() -> IStorageProvider:
    """
    Build the configured storage provider.

    STORAGE_PROVIDER=bucket|disk picks explicitly; unset means bucket when
    the bucket variables are present, else disk. Disk storage is refused in
    production unless ALLOW_LOCAL_STORAGE=true.
    """
    provider_type = os.getenv("STORAGE_PROVIDER", "").lower()
    if not provider_type:
        provider_type = "bucket" if _bucket_configured() else "disk"

    if provider_type == "bucket":
        return BucketStorageProvider()

    if not _local_storage_allowed():
        raise StorageServiceError(
            "Object storage is not configured and local storage is disabled in production",
            error_code="STORAGE_NOT_CONFIGURED",
        )

    storage_path = os.getenv("STORAGE_PATH", "uploads")
    logger.warning(
        "Object storage not configured; receipts are stored on local disk",
        extra={"storage_path": storage_path},
    )
    return DiskStorageProvider(storage_path)


_provider: Optional[IStorageProvider] = None


def get_storage_provider() -> IStorageProvider:
    """FastAPI dependency returning the process-wide storage provider."""
    global _provider
    if _provider is None:
        _provider = create_storage_provider()
    return _provider
