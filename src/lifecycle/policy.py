"""Age-based lifecycle decisions for archived files."""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional

from archival.models import (
    AccessTier,
    ArchivalFile,
    LifecyclePolicy,
    TableConfiguration,
    TierThresholds,
)


class ActionKind(Enum):
    NONE = "none"
    TIER = "tier"
    DELETE = "delete"


@dataclass(frozen=True)
class LifecycleAction:
    """What should happen to one file."""

    kind: ActionKind
    target_tier: Optional[AccessTier] = None

    @classmethod
    def none(cls) -> "LifecycleAction":
        return cls(ActionKind.NONE)

    @classmethod
    def delete(cls) -> "LifecycleAction":
        return cls(ActionKind.DELETE)

    @classmethod
    def tier(cls, target: AccessTier) -> "LifecycleAction":
        return cls(ActionKind.TIER, target)


def file_age_days(file: ArchivalFile, today: date) -> int:
    """Days between the file's as-of date (or creation date) and today.

    Raises:
        ValueError: If the file has neither an as-of date nor a creation time
    """
    if file.as_of_date is not None:
        base = file.as_of_date
    elif file.created_at is not None:
        base = file.created_at.date()
    else:
        raise ValueError(f"Archived file {file.blob_path} has no as-of date or creation time")
    return today.toordinal() - base.toordinal()


def decide_action(age_days: int, thresholds: TierThresholds) -> LifecycleAction:
    """Pick the action for a file of the given age.

    Thresholds are not assumed to be ordered: delete is checked first, then
    archive, then cool, and the first one reached wins.
    """
    if thresholds.delete_days is not None and age_days >= thresholds.delete_days:
        return LifecycleAction.delete()
    if thresholds.archive_days is not None and age_days >= thresholds.archive_days:
        return LifecycleAction.tier(AccessTier.ARCHIVE)
    if thresholds.cool_days is not None and age_days >= thresholds.cool_days:
        return LifecycleAction.tier(AccessTier.COOL)
    return LifecycleAction.none()


def resolve_policy(
    file: ArchivalFile,
    policies: Mapping[int, LifecyclePolicy],
    table_configs: Mapping[int, TableConfiguration],
    default_policy_id: Optional[int] = None,
) -> Optional[LifecyclePolicy]:
    """Effective policy of a file: its override, else its table's, else the default.

    Args:
        file: Archived file
        policies: Loaded active policies by id
        table_configs: Loaded table configurations by id
        default_policy_id: Policy inherited by tables without their own

    Returns:
        The policy, or None when nothing resolves
    """
    if file.override_file_lifecycle_policy_id is not None:
        override = policies.get(file.override_file_lifecycle_policy_id)
        if override is not None:
            return override

    table_config = table_configs.get(file.table_configuration_id)
    if table_config is not None:
        if table_config.lifecycle_policy is not None:
            return table_config.lifecycle_policy
        if table_config.file_lifecycle_policy_id is not None:
            policy = policies.get(table_config.file_lifecycle_policy_id)
            if policy is not None:
                return policy

    if default_policy_id is not None:
        return policies.get(default_policy_id)
    return None
