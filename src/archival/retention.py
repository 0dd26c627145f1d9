"""Which as-of dates of a table stay in the source and which are archived."""

import calendar
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional

import structlog

from archival.config import RetentionSettings
from archival.models import DateType, TableConfiguration
from archival.source_repository import SourceTableRef, SourceTableRepository
from utils.logging import get_logger


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RetentionPlan:
    """Outcome of a retention computation for one table."""

    keep: set[date] = field(default_factory=set)
    candidates: list[date] = field(default_factory=list)
    date_types: dict[date, DateType] = field(default_factory=dict)


def _quarter(d: date) -> int:
    return (d.month - 1) // 3 + 1


def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def classify_dates(dates: Iterable[date], today: date) -> dict[date, DateType]:
    """Classify each date as the last present date of its year, quarter or month.

    A date is EOY when it is the latest present date of a year that has
    already ended, EOQ for a finished quarter, EOM for a finished month, and
    EOD otherwise. Periods still in progress never produce a period-end date.

    Args:
        dates: As-of dates present in the table
        today: Reference date for deciding which periods are over

    Returns:
        Date type per date
    """
    unique = sorted(set(dates))
    last_of_year: dict[int, date] = {}
    last_of_quarter: dict[tuple[int, int], date] = {}
    last_of_month: dict[tuple[int, int], date] = {}
    for d in unique:
        last_of_year[d.year] = d
        last_of_quarter[(d.year, _quarter(d))] = d
        last_of_month[(d.year, d.month)] = d

    types: dict[date, DateType] = {}
    for d in unique:
        quarter = _quarter(d)
        if last_of_year[d.year] == d and date(d.year, 12, 31) < today:
            types[d] = DateType.EOY
        elif last_of_quarter[(d.year, quarter)] == d and _month_end(d.year, quarter * 3) < today:
            types[d] = DateType.EOQ
        elif last_of_month[(d.year, d.month)] == d and _month_end(d.year, d.month) < today:
            types[d] = DateType.EOM
        else:
            types[d] = DateType.EOD
    return types


class RetentionService:
    """Computes the keep set and archival candidates of a table."""

    def __init__(
        self,
        source_repository: SourceTableRepository,
        settings: Optional[RetentionSettings] = None,
        now: Callable[[], datetime] = utc_now,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.source_repository = source_repository
        self.settings = settings or RetentionSettings()
        self.now = now
        self.logger = logger or get_logger("retention")

    async def compute_retention(self, table_config: TableConfiguration) -> RetentionPlan:
        """Split the table's as-of dates into kept dates and archival candidates.

        The most recent ``keep_last_*`` dates of each date type are kept, as is
        every date younger than ``min_age_days``. Everything else is a
        candidate, in ascending order.
        """
        table = SourceTableRef.from_config(table_config)
        dates = await self.source_repository.get_distinct_as_of_dates(table)
        today = self.now().date()
        return self.plan(table_config, dates, today)

    def plan(
        self, table_config: TableConfiguration, dates: Iterable[date], today: date
    ) -> RetentionPlan:
        date_types = classify_dates(dates, today)
        keep_counts = {
            DateType.EOD: table_config.keep_last_eod,
            DateType.EOM: table_config.keep_last_eom,
            DateType.EOQ: table_config.keep_last_eoq,
            DateType.EOY: table_config.keep_last_eoy,
        }

        keep: set[date] = set()
        for date_type, count in keep_counts.items():
            if count <= 0:
                continue
            of_type = sorted((d for d, t in date_types.items() if t is date_type), reverse=True)
            keep.update(of_type[:count])

        min_age = self.settings.min_age_days
        keep.update(d for d in date_types if (today - d).days < min_age)

        candidates = sorted(d for d in date_types if d not in keep)
        self.logger.debug(
            "Retention computed",
            table_config_id=table_config.id,
            dates=len(date_types),
            keep=len(keep),
            candidates=len(candidates),
        )
        return RetentionPlan(keep=keep, candidates=candidates, date_types=date_types)
