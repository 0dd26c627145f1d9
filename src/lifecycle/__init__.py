"""Lifecycle enforcement - tiering and expiry of archived Parquet parts."""

__all__ = [
    "LifecycleEnforcer",
    "LifecycleExecutor",
    "decide_action",
    "resolve_policy",
]
