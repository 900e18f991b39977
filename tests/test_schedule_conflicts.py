from datetime import date

from models.record import Land, Production
from services.schedule_conflicts import (
    DateRange,
    all_conflicts,
    date_range_of,
    detect_conflicts,
    format_conflict_message,
    group_productions_by_land,
    overlap_days,
    overlaps,
    production_bar_position,
)


def make_production(pid, land_id="L1", planted="2026-01-01", **extra):
    return Production(id=pid, land_id=land_id, commodity=extra.pop("commodity", "Cabai"), planting_date=planted, **extra)


def test_default_season_is_ninety_days_inclusive():
    rng = date_range_of(make_production("p1"))
    assert rng == DateRange(date(2026, 1, 1), date(2026, 3, 31))


def test_harvest_date_wins_over_estimate():
    p = make_production("p1", harvest_date="2026-02-10", estimated_harvest_date="2026-03-01")
    assert date_range_of(p).end == date(2026, 2, 10)
    p = make_production("p2", estimated_harvest_date="2026-03-01")
    assert date_range_of(p).end == date(2026, 3, 1)


def test_touching_endpoints_overlap_for_one_day():
    a = DateRange(date(2026, 1, 1), date(2026, 1, 31))
    b = DateRange(date(2026, 1, 31), date(2026, 2, 28))
    assert overlaps(a, b)
    assert overlap_days(a, b) == 1


def test_disjoint_ranges_do_not_overlap():
    a = DateRange(date(2026, 1, 1), date(2026, 1, 30))
    b = DateRange(date(2026, 1, 31), date(2026, 2, 28))
    assert not overlaps(a, b)
    assert overlap_days(a, b) == 0


def test_inverted_range_never_gives_negative_days():
    bad = DateRange(date(2026, 3, 1), date(2026, 1, 1))
    other = DateRange(date(2026, 1, 15), date(2026, 2, 15))
    assert overlap_days(bad, other) >= 0


def test_second_planting_overlaps_seventeen_days():
    first = make_production("p1")
    second = make_production("p2", planted="2026-03-15")
    conflicts = detect_conflicts("L1", date_range_of(second), [first, second], exclude_id="p2")
    assert len(conflicts) == 1
    assert conflicts[0].production.id == "p1"
    assert conflicts[0].overlap_days == 17
    assert conflicts[0].type == "overlap"


def test_detect_ignores_other_lands_and_harvested():
    existing = [
        make_production("p1", land_id="L2"),
        make_production("p2", status="harvested"),
        make_production("p3", planted="2026-06-01"),
    ]
    rng = DateRange(date(2026, 1, 10), date(2026, 2, 10))
    assert detect_conflicts("L1", rng, existing) == []


def test_all_conflicts_lists_pairs_from_both_sides():
    productions = [
        make_production("b", planted="2026-03-15"),
        make_production("a"),
        make_production("c", land_id="L2"),
    ]
    result = all_conflicts(productions)
    assert set(result) == {"a", "b"}
    assert [c.production.id for c in result["a"]] == ["b"]
    assert [c.production.id for c in result["b"]] == ["a"]
    assert result["a"][0].overlap_days == result["b"][0].overlap_days == 17


def test_all_conflicts_is_order_independent():
    productions = [
        make_production("a"),
        make_production("b", planted="2026-02-01"),
        make_production("c", planted="2026-03-01"),
    ]
    forward = all_conflicts(productions)
    backward = all_conflicts(list(reversed(productions)))
    assert forward == backward
    assert list(forward) == ["a", "b", "c"]


def test_group_productions_by_land():
    lands = [Land(id="L2", name="Sawah Timur"), Land(id="L1", name="Kebun Barat")]
    productions = [
        make_production("p2", planted="2026-03-15"),
        make_production("p1"),
        make_production("p3", land_id="L2", planted="2026-05-01"),
        make_production("p4", land_id="missing"),
    ]
    groups = group_productions_by_land(productions, lands)
    assert [g.land.id for g in groups] == ["L1", "L2"]
    assert [item.production.id for item in groups[0].productions] == ["p1", "p2"]
    assert groups[0].has_conflicts is True
    assert groups[1].has_conflicts is False


def test_format_conflict_message():
    first = make_production("p1", commodity="Tomat")
    [conflict] = detect_conflicts("L1", DateRange(date(2026, 3, 15), date(2026, 4, 1)), [first])
    assert format_conflict_message(conflict) == "Tumpang tindih 17 hari dengan Tomat"


def test_production_bar_position():
    pos = production_bar_position(DateRange(date(2025, 12, 1), date(2026, 1, 10)), 2026)
    assert pos.visible
    assert pos.left == 0
    assert round(pos.width, 4) == round(10 / 365 * 100, 4)

    hidden = production_bar_position(DateRange(date(2025, 1, 1), date(2025, 2, 1)), 2026)
    assert hidden.visible is False

    tiny = production_bar_position(DateRange(date(2026, 6, 1), date(2026, 6, 1)), 2026)
    assert tiny.width == 1.0


def test_production_bar_position_uses_fixed_year_scale():
    pos = production_bar_position(DateRange(date(2028, 1, 1), date(2028, 1, 10)), 2028)
    assert round(pos.width, 4) == round(10 / 365 * 100, 4)

    march = production_bar_position(DateRange(date(2028, 3, 1), date(2028, 3, 1)), 2028)
    assert round(march.left, 4) == round(60 / 365 * 100, 4)
