"""Fixtures for tests that need PostgreSQL and an S3-compatible endpoint.

Defaults match a local docker-compose stack (PostgreSQL on 5432, MinIO on
9000); override them with the COLDVAULT_TEST_* environment variables.
"""

import os
import uuid
from collections.abc import AsyncGenerator

import boto3
import pytest
import pytest_asyncio
from botocore.exceptions import BotoCoreError, ClientError

from archival.config import ColdVaultConfig, DatabaseConfig, StorageAccountConfig
from archival.database import DatabaseManager
from archival.exceptions import DatabaseError
from archival.metadata_repository import MetadataRepository

os.environ.setdefault("COLDVAULT_TEST_DB_PASSWORD", "archiver_password")


@pytest.fixture
def integration_config() -> ColdVaultConfig:
    database = DatabaseConfig(
        name="ops",
        host=os.getenv("COLDVAULT_TEST_DB_HOST", "localhost"),
        port=int(os.getenv("COLDVAULT_TEST_DB_PORT", "5432")),
        database=os.getenv("COLDVAULT_TEST_DB_NAME", "coldvault_test"),
        user=os.getenv("COLDVAULT_TEST_DB_USER", "archiver"),
        password_env="COLDVAULT_TEST_DB_PASSWORD",
    )
    return ColdVaultConfig(
        version="1.0",
        metadata_database=database,
        source_databases=[],
        storage_accounts=[
            StorageAccountConfig(
                name="archive-acct",
                endpoint=os.getenv("COLDVAULT_TEST_S3_ENDPOINT", "http://localhost:9000"),
                access_key_id=os.getenv("COLDVAULT_TEST_S3_KEY", "minioadmin"),
                secret_access_key=os.getenv("COLDVAULT_TEST_S3_SECRET", "minioadmin"),
                # MinIO only stores STANDARD
                tier_storage_classes={"Cool": "STANDARD", "Archive": "STANDARD"},
            )
        ],
    )


@pytest_asyncio.fixture
async def metadata_db(integration_config: ColdVaultConfig) -> AsyncGenerator[DatabaseManager, None]:
    """Connected manager with a fresh metadata schema."""
    manager = DatabaseManager(integration_config.metadata_database)
    try:
        await manager.connect()
    except DatabaseError as e:
        pytest.skip(f"PostgreSQL not available: {e}")

    for table in (
        "archival_run_detail",
        "archival_run",
        "archival_file",
        "archival_exemption",
        "archival_table_configuration",
        "archival_file_lifecycle_policy",
    ):
        await manager.execute(f"DROP TABLE IF EXISTS {table} CASCADE")
    await MetadataRepository(manager).ensure_schema()
    try:
        yield manager
    finally:
        await manager.disconnect()


@pytest.fixture
def bucket(integration_config: ColdVaultConfig):
    """Name of a new empty bucket, removed with its objects afterwards."""
    account = integration_config.storage_accounts[0]
    client = boto3.Session(**account.get_credentials()).client(
        "s3", region_name=account.region, endpoint_url=account.endpoint
    )
    name = f"coldvault-test-{uuid.uuid4().hex[:12]}"
    try:
        client.create_bucket(Bucket=name)
    except (BotoCoreError, ClientError) as e:
        pytest.skip(f"S3 endpoint not available: {e}")

    yield name

    paginator = client.get_paginator("list_object_versions")
    for page in paginator.paginate(Bucket=name):
        for entry in page.get("Versions", []) + page.get("DeleteMarkers", []):
            client.delete_object(Bucket=name, Key=entry["Key"], VersionId=entry["VersionId"])
    client.delete_bucket(Bucket=name)
