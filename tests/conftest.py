from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING

import pytest
from vidstream.backends import BackendRegistry
from vidstream.models import BackendKind
from vidstream.proxy import StreamProxy
from vidstream.settings import (
    load_app_settings_from_env,
    load_gcs_settings_from_env,
    load_s3_settings_from_env,
)

from .fakes import MemoryBackend

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Generator

    from botocore.client import BaseClient
    from litestar.testing import AsyncTestClient


_MANAGED_PREFIXES = ("VIDSTREAM_", "GCS_", "AWS_")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host configuration from leaking into settings under test."""
    for key in list(os.environ):
        if key.startswith(_MANAGED_PREFIXES) or key == "APP_ENV":
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def memory_backend() -> MemoryBackend:
    return MemoryBackend(BackendKind.GCS, "test-bucket")


@pytest.fixture
def stream_env(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    env_vars = {
        "VIDSTREAM_GCS_BUCKET": "test-bucket",
        "VIDSTREAM_DEFAULT_BACKEND": "gcs",
        "VIDSTREAM_CHUNK_SIZE": "1024",
        "VIDSTREAM_MAX_UPLOAD_SIZE": str(1024 * 1024),
    }
    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)
    return env_vars


@pytest.fixture
def stream_proxy(stream_env: dict[str, str], memory_backend: MemoryBackend) -> StreamProxy:
    settings = load_app_settings_from_env()
    registry = BackendRegistry([memory_backend], settings.default_backend)
    return StreamProxy(
        settings,
        load_s3_settings_from_env(),
        load_gcs_settings_from_env(),
        registry=registry,
    )


@pytest.fixture
async def client(stream_proxy: StreamProxy) -> AsyncGenerator[AsyncTestClient]:
    from litestar.testing import AsyncTestClient
    from vidstream.app import create_app

    async with AsyncTestClient(app=create_app(stream_proxy)) as test_client:
        yield test_client


# MinIO-backed fixtures for the S3 integration tests.


@dataclass
class MinioService:
    endpoint: str
    access_key: str
    secret_key: str
    secure: bool


def _docker_available() -> bool:
    try:
        import docker
        from docker.errors import DockerException
    except ImportError:
        return False
    try:
        docker.from_env().ping()
    except (DockerException, OSError):
        return False
    return True


@pytest.fixture(scope="session")
def minio_access_key() -> str:
    return os.getenv("MINIO_ACCESS_KEY", "minio")


@pytest.fixture(scope="session")
def minio_secret_key() -> str:
    return os.getenv("MINIO_SECRET_KEY", "minio123")


@pytest.fixture(scope="session")
def minio_service_name() -> str:
    return "vidstream-minio"


@pytest.fixture(scope="session")
def minio_service(
    request: pytest.FixtureRequest,
    minio_access_key: str,
    minio_secret_key: str,
    minio_service_name: str,
) -> Generator[MinioService]:
    if not _docker_available():
        pytest.skip("Docker daemon not available for MinIO")

    from urllib.error import URLError
    from urllib.request import Request, urlopen

    from pytest_databases.types import ServiceContainer

    docker_service = request.getfixturevalue("docker_service")

    def check(_service: ServiceContainer) -> bool:
        url = f"http://{_service.host}:{_service.port}/minio/health/ready"
        try:
            with urlopen(url=Request(url, method="GET"), timeout=10) as response:
                return response.status == 200
        except (URLError, ConnectionError):
            return False

    with docker_service.run(
        image="quay.io/minio/minio",
        name=minio_service_name,
        command="server /data",
        container_port=9000,
        timeout=20,
        pause=0.5,
        env={
            "MINIO_ROOT_USER": minio_access_key,
            "MINIO_ROOT_PASSWORD": minio_secret_key,
        },
        check=check,
    ) as service:
        yield MinioService(
            endpoint=f"{service.host}:{service.port}",
            access_key=minio_access_key,
            secret_key=minio_secret_key,
            secure=False,
        )


@pytest.fixture
def s3_env(
    minio_service: MinioService, monkeypatch: pytest.MonkeyPatch
) -> dict[str, str]:
    """Point the S3 backend at MinIO."""
    env_vars = {
        "VIDSTREAM_S3_ENDPOINT": f"http://{minio_service.endpoint}",
        "VIDSTREAM_S3_ACCESS_KEY_ID": minio_service.access_key,
        "VIDSTREAM_S3_SECRET_ACCESS_KEY": minio_service.secret_key,
        "VIDSTREAM_S3_REGION": "us-east-1",
        "VIDSTREAM_S3_BUCKET": "vidstream-test",
        "VIDSTREAM_S3_ADDRESSING_STYLE": "path",
        "VIDSTREAM_DEFAULT_BACKEND": "s3",
    }
    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)
    return env_vars


@pytest.fixture
def s3_client(minio_service: MinioService) -> BaseClient:
    import boto3
    from botocore.config import Config

    return boto3.client(
        "s3",
        endpoint_url=f"http://{minio_service.endpoint}",
        aws_access_key_id=minio_service.access_key,
        aws_secret_access_key=minio_service.secret_key,
        region_name="us-east-1",
        config=Config(s3={"addressing_style": "path"}),
    )


@pytest.fixture
def s3_bucket(s3_client: BaseClient, s3_env: dict[str, str]) -> Generator[str]:
    from botocore.exceptions import ClientError

    bucket = s3_env["VIDSTREAM_S3_BUCKET"]
    try:
        s3_client.head_bucket(Bucket=bucket)
    except ClientError:
        s3_client.create_bucket(Bucket=bucket)
    yield bucket
    listing = s3_client.list_objects_v2(Bucket=bucket)
    for item in listing.get("Contents", []):
        s3_client.delete_object(Bucket=bucket, Key=item["Key"])
    s3_client.delete_bucket(Bucket=bucket)
