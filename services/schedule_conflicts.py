"""Detection of overlapping production schedules on the same land.

Everything here is a pure function of the productions passed in; nothing
is cached or persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional

from core.settings import PLANNING, PlanningSettings
from datetime_utils import parse_date
from models.record import Land, Production


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date


@dataclass(frozen=True)
class Conflict:
    production: Production
    overlap_days: int
    subject_id: Optional[str] = None
    type: str = "overlap"


@dataclass
class ProductionWithRange:
    production: Production
    date_range: DateRange


@dataclass
class LandProductionGroup:
    land: Land
    productions: List[ProductionWithRange] = field(default_factory=list)
    has_conflicts: bool = False


@dataclass(frozen=True)
class BarPosition:
    left: float
    width: float
    visible: bool


def _is_terminal(production: Production, settings: PlanningSettings) -> bool:
    return production.status in settings.terminal_statuses


def date_range_of(production: Production, settings: PlanningSettings = PLANNING) -> DateRange:
    """Planting date up to the harvest date, its estimate, or the default season.

    The default season counts the planting day itself, so a 90 day season
    planted on January 1st ends on March 31st.
    """

    start = parse_date(production.planting_date)
    end = parse_date(production.harvest_date) or parse_date(production.estimated_harvest_date)
    if end is None:
        end = start + timedelta(days=settings.default_season_days - 1)
    return DateRange(start=start, end=end)


def overlaps(a: DateRange, b: DateRange) -> bool:
    # Touching endpoints count.
    return a.start <= b.end and a.end >= b.start


def overlap_days(a: DateRange, b: DateRange) -> int:
    if not overlaps(a, b):
        return 0
    start = max(a.start, b.start)
    end = min(a.end, b.end)
    # A range with end before start can still "overlap"; never report negative days.
    return max(0, (end - start).days + 1)


def detect_conflicts(
    land_id: str,
    date_range: DateRange,
    existing: Iterable[Production],
    exclude_id: Optional[str] = None,
    *,
    settings: PlanningSettings = PLANNING,
) -> List[Conflict]:
    """Active productions on ``land_id`` whose season overlaps ``date_range``."""

    conflicts: List[Conflict] = []
    for production in existing:
        if production.land_id != land_id:
            continue
        if exclude_id is not None and production.id == exclude_id:
            continue
        if _is_terminal(production, settings):
            continue
        days = overlap_days(date_range, date_range_of(production, settings))
        if days > 0:
            conflicts.append(Conflict(production=production, overlap_days=days, subject_id=exclude_id))
    conflicts.sort(key=lambda c: (date_range_of(c.production, settings).start, c.production.id or ""))
    return conflicts


def all_conflicts(
    productions: Iterable[Production],
    *,
    settings: PlanningSettings = PLANNING,
) -> Dict[str, List[Conflict]]:
    """Conflicts of every active production, keyed by production id.

    A pair is listed under both of its members.
    """

    items = sorted(productions, key=lambda p: p.id or "")
    result: Dict[str, List[Conflict]] = {}
    for production in items:
        if _is_terminal(production, settings):
            continue
        found = detect_conflicts(
            production.land_id,
            date_range_of(production, settings),
            items,
            exclude_id=production.id,
            settings=settings,
        )
        if found:
            result[production.id] = found
    return result


def group_productions_by_land(
    productions: Iterable[Production],
    lands: Iterable[Land],
    *,
    settings: PlanningSettings = PLANNING,
) -> List[LandProductionGroup]:
    """Calendar rows: one group per land, productions ordered by start date."""

    productions = list(productions)
    land_by_id = {land.id: land for land in lands}
    conflicts = all_conflicts(productions, settings=settings)

    groups: Dict[str, LandProductionGroup] = {}
    for production in productions:
        land = land_by_id.get(production.land_id)
        if land is None:
            continue
        group = groups.setdefault(land.id, LandProductionGroup(land=land))
        group.productions.append(ProductionWithRange(production, date_range_of(production, settings)))
        if production.id in conflicts:
            group.has_conflicts = True

    for group in groups.values():
        group.productions.sort(key=lambda item: (item.date_range.start, item.production.id or ""))
    return sorted(groups.values(), key=lambda g: (g.land.name.casefold(), g.land.id or ""))


def format_conflict_message(conflict: Conflict) -> str:
    return f"Tumpang tindih {conflict.overlap_days} hari dengan {conflict.production.commodity}"


def production_bar_position(date_range: DateRange, year: int) -> BarPosition:
    """Left offset and width, in percent of ``year``, of a production bar.

    The calendar is drawn on a fixed 365-day scale, leap years included.
    """

    year_start = date(year, 1, 1)
    year_end = date(year, 12, 31)
    total_days = 365

    if date_range.end < year_start or date_range.start > year_end:
        return BarPosition(left=0.0, width=0.0, visible=False)

    start_day = (max(date_range.start, year_start) - year_start).days
    end_day = (min(date_range.end, year_end) - year_start).days

    left = start_day / total_days * 100
    width = (end_day - start_day + 1) / total_days * 100
    return BarPosition(left=left, width=max(width, 1.0), visible=True)


__all__ = [
    "BarPosition",
    "Conflict",
    "DateRange",
    "LandProductionGroup",
    "ProductionWithRange",
    "all_conflicts",
    "date_range_of",
    "detect_conflicts",
    "format_conflict_message",
    "group_productions_by_land",
    "overlap_days",
    "overlaps",
    "production_bar_position",
]
