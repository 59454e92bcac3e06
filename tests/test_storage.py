"""Storage providers and provider selection."""

import pytest
from botocore.exceptions import ClientError
from unittest.mock import AsyncMock, MagicMock

import storage as storage_module
from exceptions import StorageServiceError
from security.path_validation import is_safe_filename, sanitize_filename, secure_join
from storage import (
    BucketStorageProvider,
    DiskStorageProvider,
    create_storage_provider,
)


BUCKET_ENV = {
    "BUCKET_NAME": "receipts-bucket",
    "BUCKET_ACCESS_KEY_ID": "key-id",
    "BUCKET_SECRET_ACCESS_KEY": "secret",
}


@pytest.fixture
def clean_storage_env(monkeypatch):
    for name in (
        "STORAGE_PROVIDER", "ALLOW_LOCAL_STORAGE", "STORAGE_PATH", "BUCKET_NAME",
        "BUCKET_ACCESS_KEY_ID", "BUCKET_SECRET_ACCESS_KEY", "BUCKET_ENDPOINT_URL",
        "BUCKET_PUBLIC_URL", "BUCKET_REGION",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ENVIRONMENT", "development")
    return monkeypatch


class TestDiskStorage:
    @pytest.mark.asyncio
    async def test_save_and_delete(self, tmp_path):
        provider = DiskStorageProvider(str(tmp_path))

        url = await provider.save_file(b"hello", "receipt-1-abc.png", content_type="image/png")

        assert url == "/uploads/receipts/receipt-1-abc.png"
        stored = tmp_path / "receipts" / "receipt-1-abc.png"
        assert stored.read_bytes() == b"hello"
        assert provider.public_urls is False

        await provider.delete_file(url)
        assert not stored.exists()

    @pytest.mark.asyncio
    async def test_traversal_names_stay_inside_root(self, tmp_path):
        provider = DiskStorageProvider(str(tmp_path / "root"))

        url = await provider.save_file(b"x", "../../escape.png")

        assert url == "/uploads/receipts/escape.png"
        assert not (tmp_path / "escape.png").exists()

    @pytest.mark.asyncio
    async def test_delete_ignores_foreign_urls(self, tmp_path):
        provider = DiskStorageProvider(str(tmp_path))
        await provider.delete_file("https://elsewhere.example.com/receipts/a.png")


class TestPathValidation:
    def test_secure_join_keeps_components_inside_base(self, tmp_path):
        assert secure_join(tmp_path, "receipts", "a.png") == tmp_path / "receipts" / "a.png"
        assert secure_join(tmp_path, "../../etc", "passwd") == tmp_path / "etc" / "passwd"
        assert secure_join(tmp_path, "..") is None

    def test_unsafe_names(self):
        assert is_safe_filename("receipt.png") is True
        assert is_safe_filename("../etc/passwd") is False
        assert is_safe_filename("") is False
        assert "/" not in sanitize_filename("a/b/c.png")


class TestBucketStorage:
    def test_missing_config_raises(self, clean_storage_env):
        with pytest.raises(StorageServiceError) as exc_info:
            BucketStorageProvider()
        assert exc_info.value.error_code == "STORAGE_NOT_CONFIGURED"

    def test_urls_prefer_public_base(self, clean_storage_env):
        for key, value in BUCKET_ENV.items():
            clean_storage_env.setenv(key, value)
        clean_storage_env.setenv("BUCKET_PUBLIC_URL", "https://cdn.example.com/")

        provider = BucketStorageProvider()

        url = provider.build_url("receipts/r.png")
        assert url == "https://cdn.example.com/receipts/r.png"
        assert provider.key_from_url(url) == "receipts/r.png"
        assert provider.public_urls is True

    def test_urls_fall_back_to_endpoint(self, clean_storage_env):
        for key, value in BUCKET_ENV.items():
            clean_storage_env.setenv(key, value)
        clean_storage_env.setenv("BUCKET_ENDPOINT_URL", "https://acct.r2.cloudflarestorage.com")

        provider = BucketStorageProvider()

        url = provider.build_url("receipts/r.png")
        assert url == "https://acct.r2.cloudflarestorage.com/receipts-bucket/receipts/r.png"
        assert provider.key_from_url(url) == "receipts/r.png"
        assert provider.key_from_url("https://other.example.com/x") is None

    @pytest.mark.asyncio
    async def test_upload_error_is_wrapped(self, clean_storage_env):
        for key, value in BUCKET_ENV.items():
            clean_storage_env.setenv(key, value)
        provider = BucketStorageProvider()

        s3 = MagicMock()
        s3.put_object = AsyncMock(
            side_effect=ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")
        )
        client_cm = MagicMock()
        client_cm.__aenter__ = AsyncMock(return_value=s3)
        client_cm.__aexit__ = AsyncMock(return_value=False)
        provider._client = MagicMock(return_value=client_cm)

        with pytest.raises(StorageServiceError):
            await provider.save_file(b"data", "r.png", content_type="image/png")

    @pytest.mark.asyncio
    async def test_upload_sends_metadata(self, clean_storage_env):
        for key, value in BUCKET_ENV.items():
            clean_storage_env.setenv(key, value)
        clean_storage_env.setenv("BUCKET_PUBLIC_URL", "https://cdn.example.com")
        provider = BucketStorageProvider()

        s3 = MagicMock()
        s3.put_object = AsyncMock(return_value={})
        client_cm = MagicMock()
        client_cm.__aenter__ = AsyncMock(return_value=s3)
        client_cm.__aexit__ = AsyncMock(return_value=False)
        provider._client = MagicMock(return_value=client_cm)

        url = await provider.save_file(b"data", "r.png", content_type="image/png", metadata={"user-id": "7"})

        assert url == "https://cdn.example.com/receipts/r.png"
        kwargs = s3.put_object.await_args.kwargs
        assert kwargs["Key"] == "receipts/r.png"
        assert kwargs["ContentType"] == "image/png"
        assert kwargs["Metadata"] == {"user-id": "7"}


class TestProviderSelection:
    def test_defaults_to_disk_outside_production(self, clean_storage_env, tmp_path):
        clean_storage_env.setenv("STORAGE_PATH", str(tmp_path))
        provider = create_storage_provider()
        assert isinstance(provider, DiskStorageProvider)

    def test_bucket_when_configured(self, clean_storage_env):
        for key, value in BUCKET_ENV.items():
            clean_storage_env.setenv(key, value)
        assert isinstance(create_storage_provider(), BucketStorageProvider)

    def test_production_refuses_disk(self, clean_storage_env):
        clean_storage_env.setenv("ENVIRONMENT", "production")
        with pytest.raises(StorageServiceError) as exc_info:
            create_storage_provider()
        assert exc_info.value.error_code == "STORAGE_NOT_CONFIGURED"

    def test_production_disk_with_explicit_opt_in(self, clean_storage_env, tmp_path):
        clean_storage_env.setenv("ENVIRONMENT", "production")
        clean_storage_env.setenv("ALLOW_LOCAL_STORAGE", "true")
        clean_storage_env.setenv("STORAGE_PATH", str(tmp_path))
        assert isinstance(create_storage_provider(), DiskStorageProvider)

    def test_provider_is_cached(self, clean_storage_env, tmp_path):
        clean_storage_env.setenv("STORAGE_PATH", str(tmp_path))
        clean_storage_env.setattr(storage_module, "_provider", None)
        first = storage_module.get_storage_provider()
        assert storage_module.get_storage_provider() is first
