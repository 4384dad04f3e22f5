# tests/e2e/conftest.py
"""
Pytest fixtures for the estuary-sync end-to-end tests.

This module sets up the testing environment, including:
- Spinning up a Docker container for the staging S3 service (MinIO).
- Creating and cleaning up an isolated staging bucket for each test function.
"""

import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncGenerator, Dict

import boto3
import pytest
import pytest_asyncio
import requests
from aiobotocore.session import AioSession, get_session
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError
from requests.exceptions import ConnectionError

from estuary_sync.config import S3Config

if TYPE_CHECKING:
    from types_boto3_s3.service_resource import Bucket, S3ServiceResource

# --- Constants ---
S3_ACCESS_KEY: str = "minio-key"
S3_SECRET_KEY: str = "minio-secret"
S3_REGION: str = "us-east-1"


# --- Docker Fixtures ---
@pytest.fixture(scope="session")
def docker_compose_file(pytestconfig: pytest.Config) -> str:
    """
    Locate the docker-compose.yml file for the test suite.

    Args:
        pytestconfig (pytest.Config): The pytest configuration object.

    Returns:
        str: The absolute path to the docker-compose.yml file.
    """
    return str(Path(pytestconfig.rootpath) / "tests" / "docker-compose.yml")


@pytest.fixture(scope="session")
def docker_compose_project_name() -> str:
    return "estuary-sync-tests"


def _is_s3_responsive(url: str) -> bool:
    """
    Check if the MinIO health endpoint is responsive.

    Args:
        url (str): The base URL of the MinIO API.

    Returns:
        bool: True if the service is responsive, False otherwise.
    """
    try:
        response: requests.Response = requests.get(f"{url}/minio/health/live")
        return response.status_code == 200
    except ConnectionError:
        return False


@pytest.fixture(scope="session")
def staging_s3_service(docker_ip: str, docker_services: Any) -> Dict[str, Any]:
    """
    Ensure the staging S3 service is running and return its connection details.

    Args:
        docker_ip (str): The IP address of the Docker host, provided by pytest-docker.
        docker_services (Any): The pytest-docker services fixture.

    Returns:
        Dict[str, Any]: Connection details for the staging S3 service.
    """
    port: int = docker_services.port_for("minio-staging", 9000)
    api_url: str = f"http://{docker_ip}:{port}"
    docker_services.wait_until_responsive(
        timeout=30.0, pause=0.1, check=lambda: _is_s3_responsive(api_url)
    )
    return {
        "endpoint_url": api_url,
        "aws_access_key_id": S3_ACCESS_KEY,
        "aws_secret_access_key": S3_SECRET_KEY,
        "region_name": S3_REGION,
    }


# --- Application Fixtures ---
@pytest_asyncio.fixture(scope="function")
async def staging_config(
    staging_s3_service: Dict[str, Any],
) -> AsyncGenerator[S3Config, None]:
    """
    Create a unique, isolated staging bucket for a single test function.

    The bucket and its contents are removed after the test.

    Args:
        staging_s3_service (Dict[str, Any]): Connection details for MinIO.

    Yields:
        S3Config: Configuration pointing at the new bucket.
    """
    session: AioSession = get_session()
    bucket: str = f"staging-{uuid.uuid4()}"
    async with session.create_client("s3", **staging_s3_service) as s3:
        await s3.create_bucket(Bucket=bucket)

    yield S3Config(
        bucket=bucket,
        region=S3_REGION,
        endpoint_url=staging_s3_service["endpoint_url"],
        access_key_id=S3_ACCESS_KEY,
        secret_access_key=S3_SECRET_KEY,
    )

    # Cleanup: boto3 is simpler for synchronous, recursive delete
    boto_config: BotoConfig = BotoConfig(
        retries={"max_attempts": 0, "mode": "standard"}
    )
    resource: "S3ServiceResource" = boto3.resource(
        "s3", **staging_s3_service, config=boto_config
    )
    try:
        bucket_obj: "Bucket" = resource.Bucket(bucket)
        bucket_obj.objects.all().delete()
        bucket_obj.delete()
    except ClientError as e:
        if e.response["Error"]["Code"] != "NoSuchBucket":
            raise
