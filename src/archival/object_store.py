"""S3-compatible object storage for archived parts."""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, BinaryIO, Optional, TypeVar
from urllib.parse import urlencode

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from structlog import BoundLogger

from archival.config import StorageAccountConfig
from archival.exceptions import (
    ConfigurationError,
    StorageOperationError,
    TierUnsupportedError,
    TransientUploadError,
)
from archival.models import AccessTier, BlobInfo
from utils.logging import get_logger

T = TypeVar("T")

TRANSIENT_ERROR_CODES = frozenset(
    {
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "RequestTimeout",
        "RequestTimeoutException",
        "InternalError",
        "ServiceUnavailable",
        "503",
        "500",
    }
)
UNSUPPORTED_TIER_CODES = frozenset({"InvalidStorageClass"})
NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})
CONNECTION_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)
DELETE_BATCH_SIZE = 1000


def error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", "Unknown"))


def is_tier_unsupported(error: ClientError) -> bool:
    """Whether a storage error means the requested tier is not available."""
    if error_code(error) in UNSUPPORTED_TIER_CODES:
        return True
    message = str(error.response.get("Error", {}).get("Message", "")).lower()
    if "storage class" not in message and "tier" not in message:
        return False
    return any(word in message for word in ("not supported", "unsupported", "invalid"))


def is_transient(error: Exception) -> bool:
    """Whether an upload error is worth retrying."""
    if isinstance(error, CONNECTION_ERRORS):
        return True
    if isinstance(error, ClientError):
        if error_code(error) in TRANSIENT_ERROR_CODES:
            return True
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return status >= 500
    return isinstance(error, S3UploadFailedError)


@dataclass(frozen=True)
class BlobProperties:
    """What storage reports about one object."""

    access_tier: Optional[AccessTier]
    storage_class: str
    etag: Optional[str]
    size_bytes: int
    content_type: Optional[str]


class S3ObjectStore:
    """Async facade over boto3 for every configured storage account.

    boto3 is synchronous, so each call runs in the default executor.
    A storage account is a named endpoint/credential profile and a
    container is a bucket.
    """

    def __init__(
        self,
        accounts: list[StorageAccountConfig],
        logger: Optional[BoundLogger] = None,
    ) -> None:
        """Initialize object store.

        Args:
            accounts: Storage account configurations
            logger: Optional logger instance
        """
        self.accounts = {account.name: account for account in accounts}
        self.logger = logger or get_logger("object_store")
        self._clients: dict[str, Any] = {}

    def account(self, name: str) -> StorageAccountConfig:
        try:
            return self.accounts[name]
        except KeyError:
            raise ConfigurationError(
                f"Storage account '{name}' is not configured",
                context={"storage_account": name},
            ) from None

    def client(self, account_name: str) -> Any:
        """Get or create the S3 client for a storage account."""
        if account_name not in self._clients:
            account = self.account(account_name)
            try:
                credentials = account.get_credentials()
                if credentials:
                    session = boto3.Session(**credentials)
                elif account.profile:
                    session = boto3.Session(profile_name=account.profile)
                else:
                    session = boto3.Session()

                s3_kwargs: dict[str, Any] = {
                    "service_name": "s3",
                    "region_name": account.region,
                }
                if account.endpoint:
                    s3_kwargs["endpoint_url"] = account.endpoint

                self._clients[account_name] = session.client(**s3_kwargs)
            except (ValueError, BotoCoreError) as e:
                raise ConfigurationError(
                    f"Failed to create S3 client: {e}",
                    context={"storage_account": account_name},
                ) from e
            self.logger.debug(
                "S3 client initialized",
                storage_account=account_name,
                endpoint=account.endpoint or "AWS S3",
                region=account.region,
            )
        return self._clients[account_name]

    def storage_class_for(self, account_name: str, tier: AccessTier) -> str:
        return self.account(account_name).tier_storage_classes[tier.value]

    def tier_for_storage_class(
        self, account_name: str, storage_class: Optional[str]
    ) -> Optional[AccessTier]:
        storage_class = storage_class or "STANDARD"
        for tier_name, mapped in self.account(account_name).tier_storage_classes.items():
            if mapped == storage_class:
                return AccessTier.parse(tier_name)
        return None

    async def _run(self, fn: Callable[[], T]) -> T:
        return await asyncio.get_event_loop().run_in_executor(None, fn)

    async def upload(
        self,
        account_name: str,
        container: str,
        path: str,
        content_type: str,
        stream: BinaryIO,
        tags: Optional[dict[str, str]] = None,
    ) -> BlobInfo:
        """Upload a stream and report the stored object's etag and size.

        Raises:
            TransientUploadError: Throttling, server or connection errors
            StorageOperationError: Any other upload failure
        """
        client = self.client(account_name)
        extra_args: dict[str, Any] = {
            "ContentType": content_type,
            "StorageClass": self.storage_class_for(account_name, AccessTier.HOT),
        }
        if tags:
            extra_args["Tagging"] = urlencode(tags)

        def _upload() -> dict[str, Any]:
            client.upload_fileobj(stream, container, path, ExtraArgs=extra_args)
            return client.head_object(Bucket=container, Key=path)

        try:
            head = await self._run(_upload)
        except (ClientError, BotoCoreError, S3UploadFailedError) as e:
            context = {"storage_account": account_name, "bucket": container, "key": path}
            if is_transient(e):
                raise TransientUploadError(f"Upload failed: {e}", context=context) from e
            raise StorageOperationError(f"Upload failed: {e}", context=context) from e

        self.logger.debug(
            "Object uploaded",
            bucket=container,
            key=path,
            size=head.get("ContentLength"),
        )
        return BlobInfo(
            storage_account_name=account_name,
            container_name=container,
            blob_path=path,
            etag=str(head.get("ETag", "")).strip('"') or None,
            content_type=head.get("ContentType", content_type),
            size_bytes=head.get("ContentLength"),
        )

    async def set_access_tier(
        self,
        account_name: str,
        container: str,
        path: str,
        tier: AccessTier,
    ) -> None:
        """Move an object to another tier with an in-place copy.

        Raises:
            TierUnsupportedError: The account cannot store objects in that tier
            StorageOperationError: Any other failure
        """
        client = self.client(account_name)
        storage_class = self.storage_class_for(account_name, tier)

        def _copy() -> None:
            client.copy_object(
                Bucket=container,
                Key=path,
                CopySource={"Bucket": container, "Key": path},
                StorageClass=storage_class,
                MetadataDirective="COPY",
                TaggingDirective="COPY",
            )

        context = {"bucket": container, "key": path, "tier": tier.value}
        try:
            await self._run(_copy)
        except ClientError as e:
            if is_tier_unsupported(e):
                raise TierUnsupportedError(
                    f"Tier {tier.value} ({storage_class}) not supported: {error_code(e)}",
                    tier=tier.value,
                    context=context,
                ) from e
            raise StorageOperationError(f"Set tier failed: {error_code(e)}", context=context) from e
        except BotoCoreError as e:
            raise StorageOperationError(f"Set tier failed: {e}", context=context) from e

        self.logger.debug("Access tier set", bucket=container, key=path, tier=tier.value)

    async def delete_if_exists(
        self,
        account_name: str,
        container: str,
        path: str,
        include_versions: bool = True,
    ) -> bool:
        """Delete an object, and by default every stored version of it.

        Returns:
            False if nothing existed under the key

        Raises:
            StorageOperationError: If the delete fails
        """
        client = self.client(account_name)

        def _delete() -> bool:
            if not include_versions:
                try:
                    client.head_object(Bucket=container, Key=path)
                except ClientError as e:
                    if error_code(e) in NOT_FOUND_CODES:
                        return False
                    raise
                client.delete_object(Bucket=container, Key=path)
                return True

            targets = []
            paginator = client.get_paginator("list_object_versions")
            for page in paginator.paginate(Bucket=container, Prefix=path):
                for entry in page.get("Versions", []) + page.get("DeleteMarkers", []):
                    if entry["Key"] == path:
                        targets.append({"Key": path, "VersionId": entry["VersionId"]})
            if not targets:
                return False

            for start in range(0, len(targets), DELETE_BATCH_SIZE):
                response = client.delete_objects(
                    Bucket=container,
                    Delete={"Objects": targets[start : start + DELETE_BATCH_SIZE], "Quiet": True},
                )
                errors = response.get("Errors", [])
                if errors:
                    raise StorageOperationError(
                        f"Failed to delete {len(errors)} object version(s): "
                        f"{errors[0].get('Code', 'Unknown')}",
                        context={"bucket": container, "key": path},
                    )
            return True

        try:
            deleted = await self._run(_delete)
        except ClientError as e:
            raise StorageOperationError(
                f"Delete failed: {error_code(e)}",
                context={"bucket": container, "key": path},
            ) from e
        except BotoCoreError as e:
            raise StorageOperationError(
                f"Delete failed: {e}", context={"bucket": container, "key": path}
            ) from e

        self.logger.debug("Object deleted", bucket=container, key=path, existed=deleted)
        return deleted

    async def get_properties(self, account_name: str, container: str, path: str) -> BlobProperties:
        """Read tier, etag and size of an object.

        Raises:
            StorageOperationError: If the object is missing or unreadable
        """
        client = self.client(account_name)
        try:
            head = await self._run(lambda: client.head_object(Bucket=container, Key=path))
        except (ClientError, BotoCoreError) as e:
            raise StorageOperationError(
                f"Failed to read object properties: {e}",
                context={"bucket": container, "key": path},
            ) from e
        storage_class = head.get("StorageClass") or "STANDARD"
        return BlobProperties(
            access_tier=self.tier_for_storage_class(account_name, storage_class),
            storage_class=storage_class,
            etag=str(head.get("ETag", "")).strip('"') or None,
            size_bytes=head.get("ContentLength", 0),
            content_type=head.get("ContentType"),
        )

    async def set_tags(
        self, account_name: str, container: str, path: str, tags: dict[str, str]
    ) -> None:
        client = self.client(account_name)
        tag_set = [{"Key": key, "Value": value} for key, value in tags.items()]
        try:
            await self._run(
                lambda: client.put_object_tagging(
                    Bucket=container, Key=path, Tagging={"TagSet": tag_set}
                )
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageOperationError(
                f"Failed to set tags: {e}", context={"bucket": container, "key": path}
            ) from e

    async def get_tags(self, account_name: str, container: str, path: str) -> dict[str, str]:
        client = self.client(account_name)
        try:
            response = await self._run(
                lambda: client.get_object_tagging(Bucket=container, Key=path)
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageOperationError(
                f"Failed to read tags: {e}", context={"bucket": container, "key": path}
            ) from e
        return {tag["Key"]: tag["Value"] for tag in response.get("TagSet", [])}

    async def list_objects(
        self, account_name: str, container: str, prefix: str = ""
    ) -> list[dict[str, Any]]:
        """List objects under a prefix.

        Returns:
            Dictionaries with 'key', 'size', 'last_modified' and 'storage_class'
        """
        client = self.client(account_name)

        def _list() -> list[dict[str, Any]]:
            objects = []
            paginator = client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=container, Prefix=prefix.lstrip("/")):
                for obj in page.get("Contents", []):
                    objects.append(
                        {
                            "key": obj["Key"],
                            "size": obj.get("Size", 0),
                            "last_modified": obj.get("LastModified"),
                            "storage_class": obj.get("StorageClass", "STANDARD"),
                        }
                    )
            return objects

        try:
            return await self._run(_list)
        except (ClientError, BotoCoreError) as e:
            raise StorageOperationError(
                f"Failed to list objects: {e}",
                context={"bucket": container, "prefix": prefix},
            ) from e
