"""Object tags describing where an archived part came from."""

from datetime import date
from typing import Optional

from archival.models import BlobInfo, DateType
from archival.object_store import S3ObjectStore


class TaggingService:
    """Builds and applies archival tags on stored objects."""

    def __init__(self, object_store: S3ObjectStore) -> None:
        self.object_store = object_store

    @staticmethod
    def build_tags(
        table_configuration_id: int,
        as_of_date: Optional[date],
        date_type: Optional[DateType],
        policy_tag: Optional[str],
        is_exempt: bool,
    ) -> dict[str, str]:
        """Build the tag set for one archived part.

        Args:
            table_configuration_id: Owning table configuration
            as_of_date: Snapshot date, omitted from the tags when None
            date_type: Snapshot date type, omitted from the tags when None
            policy_tag: Storage-side policy tag ("" when unset)
            is_exempt: Whether the table/date is exempt from archival

        Returns:
            Tag name to value
        """
        tags = {
            "archival_table_configuration_id": str(table_configuration_id),
            "archival_policy": policy_tag or "",
            "archival_exempt": "true" if is_exempt else "false",
        }
        if as_of_date is not None:
            tags["archival_date"] = as_of_date.strftime("%Y-%m-%d")
        if date_type is not None:
            tags["archival_date_type"] = date_type.value
        return tags

    async def set_tags(self, blob: BlobInfo, tags: dict[str, str]) -> None:
        await self.object_store.set_tags(
            blob.storage_account_name, blob.container_name, blob.blob_path, tags
        )
