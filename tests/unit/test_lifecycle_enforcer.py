"""Unit tests for the lifecycle enforcer."""

import asyncio
from dataclasses import replace
from datetime import date, timedelta

import pytest

from archival.config import LifecycleSettings
from archival.models import (
    AccessTier,
    ArchivalFile,
    ArchivalFileStatus,
    DateType,
    LifecyclePolicy,
    RunDetailPhase,
    RunDetailStatus,
    RunStatus,
)
from lifecycle.enforcer import NO_POLICY_RESOLVED, LifecycleEnforcer

POLICY = LifecyclePolicy(
    id=10,
    name="standard",
    eod_cool_days=30,
    eod_archive_days=90,
    eod_delete_days=365,
)


def _file(name: str, age_days: int, fixed_now, **overrides) -> ArchivalFile:
    values = {
        "table_configuration_id": 1,
        "storage_account_name": "archive-acct",
        "container_name": "cold",
        "blob_path": f"warehouse/public/trades/{name}.parquet",
        "as_of_date": fixed_now.date() - timedelta(days=age_days),
        "date_type": DateType.EOD,
        "status": ArchivalFileStatus.ACTIVE,
        "current_access_tier": AccessTier.HOT,
    }
    values.update(overrides)
    return ArchivalFile(**values)


@pytest.fixture
def seeded(fake_metadata, trades_config, fixed_now):
    fake_metadata.add_table(trades_config)
    fake_metadata.add_policy(POLICY)
    files = {
        "new": fake_metadata.add_file(_file("new", 12, fixed_now)),
        "cool": fake_metadata.add_file(_file("cool", 61, fixed_now)),
        "archive": fake_metadata.add_file(_file("archive", 151, fixed_now)),
        "old": fake_metadata.add_file(_file("old", 400, fixed_now)),
    }
    return {name: file.id for name, file in files.items()}


@pytest.fixture
def make_enforcer(fake_metadata, fake_object_store, lifecycle_settings, fixed_now):
    def factory(settings: LifecycleSettings = None) -> LifecycleEnforcer:
        return LifecycleEnforcer(
            fake_metadata,
            fake_object_store,
            settings or lifecycle_settings,
            now=lambda: fixed_now,
        )

    return factory


def _messages(fake_metadata, run_id):
    return {d.file_path.rsplit("/", 1)[-1]: d.error_message for d in fake_metadata.details_for(run_id)}


@pytest.mark.asyncio
async def test_live_enforcement(make_enforcer, fake_metadata, fake_object_store, seeded, fixed_now) -> None:
    """Test files are tiered and expired by age and persisted in one batch."""
    result = await make_enforcer().enforce("archive-acct")

    assert (result.tiered, result.deleted, result.failed) == (2, 1, 0)
    files = fake_metadata.files
    assert files[seeded["new"]].current_access_tier is AccessTier.HOT
    assert files[seeded["cool"]].current_access_tier is AccessTier.COOL
    assert files[seeded["archive"]].current_access_tier is AccessTier.ARCHIVE
    assert files[seeded["old"]].status is ArchivalFileStatus.DELETED
    assert all(f.last_tier_checked_at == fixed_now for f in files.values())

    assert _messages(fake_metadata, 1) == {
        "cool.parquet": "SetTier=Cool",
        "archive.parquet": "SetTier=Archive",
        "old.parquet": "Deleted",
    }
    assert all(d.phase is RunDetailPhase.LIFECYCLE for d in fake_metadata.details)
    assert fake_metadata.update_calls == 1
    assert fake_metadata.bulk_detail_calls == 1
    assert fake_metadata.runs[1]["status"] is RunStatus.SUCCESS
    assert fake_metadata.runs[1]["note"] == "Tiered=2 Deleted=1 Failed=0"
    assert fake_object_store.delete_calls == ["warehouse/public/trades/old.parquet"]


@pytest.mark.asyncio
async def test_recently_checked_files_are_not_candidates(
    make_enforcer, fake_metadata, fake_object_store, seeded
) -> None:
    """Test a second pass within the check interval does nothing."""
    enforcer = make_enforcer()
    await enforcer.enforce("archive-acct")
    fake_object_store.tier_calls.clear()

    result = await enforcer.enforce("archive-acct")

    assert (result.tiered, result.deleted, result.failed) == (0, 0, 0)
    assert fake_object_store.tier_calls == []
    assert fake_metadata.runs[2]["note"] == "No candidates found"


@pytest.mark.asyncio
async def test_archive_unsupported_falls_back_to_cool(
    make_enforcer, fake_metadata, fake_object_store, seeded
) -> None:
    """Test an unsupported Archive tier is applied as Cool and not failed."""
    fake_object_store.unsupported_tiers.add(AccessTier.ARCHIVE)

    result = await make_enforcer().enforce("archive-acct")

    assert result.failed == 0
    assert result.tiered == 2
    archived = fake_metadata.files[seeded["archive"]]
    assert archived.current_access_tier is AccessTier.COOL
    assert _messages(fake_metadata, 1)["archive.parquet"] == "SetTier=Cool (fallback from Archive)"
    assert ("warehouse/public/trades/archive.parquet", AccessTier.COOL) in fake_object_store.tier_calls


@pytest.mark.asyncio
async def test_archive_unsupported_and_already_cool_is_noop(
    make_enforcer, fake_metadata, fake_object_store, trades_config, fixed_now
) -> None:
    fake_metadata.add_table(trades_config)
    fake_metadata.add_policy(POLICY)
    file = fake_metadata.add_file(
        _file("archive", 151, fixed_now, current_access_tier=AccessTier.COOL)
    )
    fake_object_store.unsupported_tiers.add(AccessTier.ARCHIVE)

    result = await make_enforcer().enforce("archive-acct")

    assert (result.tiered, result.failed) == (0, 0)
    assert fake_metadata.files[file.id].current_access_tier is AccessTier.COOL
    assert fake_metadata.files[file.id].last_tier_checked_at == fixed_now


@pytest.mark.asyncio
async def test_tiers_never_warm_up(
    make_enforcer, fake_metadata, fake_object_store, trades_config, fixed_now
) -> None:
    """Test a file already colder than its target tier is left alone."""
    fake_metadata.add_table(trades_config)
    fake_metadata.add_policy(POLICY)
    file = fake_metadata.add_file(
        _file("cool", 61, fixed_now, current_access_tier=AccessTier.ARCHIVE)
    )

    result = await make_enforcer().enforce("archive-acct")

    assert result.tiered == 0
    assert fake_object_store.tier_calls == []
    assert fake_metadata.files[file.id].current_access_tier is AccessTier.ARCHIVE
    assert fake_metadata.details == []


@pytest.mark.asyncio
async def test_dry_run_is_neutral(make_enforcer, fake_metadata, fake_object_store, seeded) -> None:
    """Test a dry run decides like a live run but changes nothing."""
    enforcer = make_enforcer()
    before = {i: replace(f) for i, f in fake_metadata.files.items()}

    dry = await enforcer.enforce("archive-acct", dry_run=True)

    assert (dry.tiered, dry.deleted, dry.failed) == (2, 1, 0)
    assert fake_object_store.tier_calls == []
    assert fake_object_store.delete_calls == []
    assert fake_metadata.files == before
    assert _messages(fake_metadata, 1) == {
        "cool.parquet": "SetTier=Cool (dry-run)",
        "archive.parquet": "SetTier=Archive (dry-run)",
        "old.parquet": "Deleted (dry-run)",
    }

    live = await enforcer.enforce("archive-acct")
    again = await enforcer.enforce("archive-acct")

    assert (live.tiered, live.deleted, live.failed) == (2, 1, 0)
    assert (again.tiered, again.deleted, again.failed) == (0, 0, 0)


@pytest.mark.asyncio
async def test_dry_run_can_advance_last_checked(
    make_enforcer, fake_metadata, fake_object_store, seeded, fixed_now
) -> None:
    """Test the opt-in dry-run stamp hides files from the next live pass."""
    enforcer = make_enforcer(
        LifecycleSettings(degree_of_parallelism=2, dry_run_advances_last_checked=True)
    )

    await enforcer.enforce("archive-acct", dry_run=True)

    stored = fake_metadata.files[seeded["cool"]]
    assert stored.last_tier_checked_at == fixed_now
    assert stored.current_access_tier is AccessTier.HOT
    assert fake_metadata.files[seeded["old"]].status is ArchivalFileStatus.ACTIVE

    live = await enforcer.enforce("archive-acct")
    assert (live.tiered, live.deleted) == (0, 0)


@pytest.mark.asyncio
async def test_missing_policy_is_failed(
    make_enforcer, fake_metadata, trades_config, fixed_now
) -> None:
    """Test a file without any policy records a Failed detail."""
    fake_metadata.add_table(replace(trades_config, file_lifecycle_policy_id=None))
    fake_metadata.add_file(_file("orphan", 400, fixed_now))

    result = await make_enforcer().enforce("archive-acct")

    assert (result.tiered, result.deleted, result.failed) == (0, 0, 1)
    (detail,) = fake_metadata.details
    assert detail.status is RunDetailStatus.FAILED
    assert detail.error_message == NO_POLICY_RESOLVED
    assert fake_metadata.runs[1]["status"] is RunStatus.PARTIAL


@pytest.mark.asyncio
async def test_default_policy_applies(
    make_enforcer, fake_metadata, fake_object_store, trades_config, fixed_now
) -> None:
    fake_metadata.add_table(replace(trades_config, file_lifecycle_policy_id=None))
    fake_metadata.add_policy(POLICY)
    fake_metadata.add_file(_file("old", 400, fixed_now))

    result = await make_enforcer(LifecycleSettings(default_policy_id=10)).enforce("archive-acct")

    assert result.deleted == 1


@pytest.mark.asyncio
async def test_override_policy_applies(
    make_enforcer, fake_metadata, trades_config, fixed_now
) -> None:
    """Test a per-file override wins over the table's policy."""
    fake_metadata.add_table(trades_config)
    fake_metadata.add_policy(POLICY)
    fake_metadata.add_policy(LifecyclePolicy(id=11, name="keep-hot"))
    file = fake_metadata.add_file(
        _file("pinned", 400, fixed_now, override_file_lifecycle_policy_id=11)
    )

    result = await make_enforcer().enforce("archive-acct")

    assert (result.tiered, result.deleted) == (0, 0)
    assert fake_metadata.files[file.id].status is ArchivalFileStatus.ACTIVE


@pytest.mark.asyncio
async def test_storage_failure_leaves_file_for_retry(
    make_enforcer, fake_metadata, fake_object_store, seeded
) -> None:
    """Test failed deletes and tier changes keep the file's prior state."""
    fake_object_store.failing_paths.update(
        {"warehouse/public/trades/old.parquet", "warehouse/public/trades/cool.parquet"}
    )

    result = await make_enforcer().enforce("archive-acct")

    assert (result.tiered, result.deleted, result.failed) == (1, 0, 2)
    old = fake_metadata.files[seeded["old"]]
    assert old.status is ArchivalFileStatus.ACTIVE
    assert old.last_tier_checked_at is None
    cool = fake_metadata.files[seeded["cool"]]
    assert cool.current_access_tier is AccessTier.HOT
    assert cool.last_tier_checked_at is None
    failed = [d for d in fake_metadata.details if d.status is RunDetailStatus.FAILED]
    assert len(failed) == 2
    assert all(d.error_message.startswith("StorageOperationError") for d in failed)
    assert fake_metadata.runs[1]["status"] is RunStatus.PARTIAL


@pytest.mark.asyncio
async def test_four_hundred_day_old_file_is_deleted_with_versions(
    make_enforcer, fake_metadata, fake_object_store, trades_config, fixed_now
) -> None:
    fake_metadata.add_table(trades_config)
    fake_metadata.add_policy(POLICY)
    file = fake_metadata.add_file(_file("old", 400, fixed_now))
    fake_object_store.objects[("archive-acct", "cold", file.blob_path)] = b"PAR1"

    result = await make_enforcer().enforce("archive-acct", container_name="cold")

    assert result.deleted == 1
    assert fake_object_store.objects == {}
    assert fake_metadata.files[file.id].status is ArchivalFileStatus.DELETED


@pytest.mark.asyncio
async def test_scope_filters(make_enforcer, fake_metadata, seeded, fixed_now) -> None:
    """Test container and prefix narrow the candidates."""
    fake_metadata.add_file(_file("elsewhere", 400, fixed_now, container_name="other"))

    result = await make_enforcer().enforce("archive-acct", container_name="other")
    assert result.deleted == 1

    result = await make_enforcer().enforce("archive-acct", prefix="missing/")
    assert (result.tiered, result.deleted, result.failed) == (0, 0, 0)


@pytest.mark.asyncio
async def test_supplied_run_is_not_completed(make_enforcer, fake_metadata, seeded) -> None:
    """Test the caller owns a run it passes in."""
    run_id = await fake_metadata.start_run("executor")

    await make_enforcer().enforce("archive-acct", run_id=run_id)

    assert fake_metadata.runs[run_id]["ended"] is False
    assert len(fake_metadata.runs) == 1
    assert {d.run_id for d in fake_metadata.details} == {run_id}


@pytest.mark.asyncio
async def test_many_files_with_small_pool(
    make_enforcer, fake_metadata, fake_object_store, trades_config, fixed_now
) -> None:
    """Test every candidate is processed exactly once by the worker pool."""

    class SlowStore(type(fake_object_store)):
        async def set_access_tier(self, *args, **kwargs):
            await asyncio.sleep(0)
            return await super().set_access_tier(*args, **kwargs)

    store = SlowStore()
    fake_metadata.add_table(trades_config)
    fake_metadata.add_policy(POLICY)
    for i in range(25):
        fake_metadata.add_file(_file(f"f{i}", 40, fixed_now))
    enforcer = LifecycleEnforcer(
        fake_metadata, store, LifecycleSettings(degree_of_parallelism=3), now=lambda: fixed_now
    )

    result = await enforcer.enforce("archive-acct")

    assert result.tiered == 25
    assert sorted(path for path, _ in store.tier_calls) == sorted(
        f.blob_path for f in fake_metadata.files.values()
    )
    assert len(fake_metadata.details) == 25


@pytest.mark.asyncio
async def test_account_is_required(make_enforcer) -> None:
    with pytest.raises(ValueError):
        await make_enforcer().enforce("")
