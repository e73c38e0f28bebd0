"""
backend/tests/test_unify_service.py

Purpose:
    Provider-vs-database unification: one record per distinct key, status
    classification, field diffs and display ordering.
"""

from __future__ import annotations

from sportsync.models.reconcile import DiffStatus
from sportsync.services.diff_stats_service import compute_diff_stats
from sportsync.services.entity_registry import FieldSpec, get_entity_spec
from sportsync.services.unify_service import sort_for_display, unify

NAME_ONLY = (FieldSpec("name"),)


def test_provider_only_record_is_missing_in_db():
    unified = unify([{"external_id": "1", "name": "A"}], [], NAME_ONLY)

    assert len(unified) == 1
    assert unified[0].external_id == "1"
    assert unified[0].status == DiffStatus.missing_in_db
    assert unified[0].db_data is None

    stats = compute_diff_stats(unified)
    assert stats.model_dump() == {
        "db_count": 0,
        "provider_count": 1,
        "ok": 0,
        "missing": 1,
        "extra": 0,
        "mismatch": 0,
    }


def test_identical_records_are_ok():
    unified = unify([{"external_id": "1", "name": "A"}], [{"external_id": "1", "name": "A"}], NAME_ONLY)

    assert [record.status for record in unified] == [DiffStatus.ok]
    assert unified[0].field_diffs == []


def test_differing_field_is_mismatch_with_field_diff():
    unified = unify([{"external_id": "1", "name": "A"}], [{"external_id": "1", "name": "B"}], NAME_ONLY)

    assert unified[0].status == DiffStatus.mismatch
    assert [diff.model_dump() for diff in unified[0].field_diffs] == [
        {"field": "name", "db_value": "B", "provider_value": "A", "equal": False}
    ]


def test_db_only_record_is_extra_in_db():
    unified = unify([], [{"external_id": "2", "name": "X"}], NAME_ONLY)

    assert [(record.external_id, record.status) for record in unified] == [("2", DiffStatus.extra_in_db)]
    assert unified[0].provider_data is None


def test_int_and_string_ids_meet_on_one_key():
    unified = unify([{"external_id": 10, "name": "A"}], [{"external_id": "10", "name": "A"}], NAME_ONLY)

    assert len(unified) == 1
    assert unified[0].status == DiffStatus.ok


def test_one_record_per_distinct_key_and_stats_add_up():
    provider = [
        {"external_id": 1, "name": "A"},
        {"external_id": 2, "name": "B"},
        {"external_id": 2, "name": "B duplicate"},
        {"external_id": None, "name": "no id"},
        {"external_id": 4, "name": "D"},
    ]
    db = [
        {"external_id": 1, "name": "A"},
        {"external_id": 2, "name": "Bee"},
        {"external_id": 3, "name": "C"},
        {"external_id": "", "name": "blank id"},
    ]
    unified = unify(provider, db, NAME_ONLY)

    assert sorted(record.external_id for record in unified) == ["1", "2", "3", "4"]
    by_key = {record.external_id: record.status for record in unified}
    assert by_key == {
        "1": DiffStatus.ok,
        "2": DiffStatus.mismatch,
        "3": DiffStatus.extra_in_db,
        "4": DiffStatus.missing_in_db,
    }
    stats = compute_diff_stats(unified)
    assert stats.ok + stats.missing + stats.extra + stats.mismatch == len(unified)
    assert (stats.provider_count, stats.db_count) == (3, 3)


def test_provider_order_then_database_only_records():
    unified = unify(
        [{"external_id": 9, "name": "A"}, {"external_id": 3, "name": "B"}],
        [{"external_id": 7, "name": "Z"}, {"external_id": 3, "name": "B"}],
        NAME_ONLY,
    )

    assert [record.external_id for record in unified] == ["9", "3", "7"]


def test_fixture_fields_compare_with_their_types():
    spec = get_entity_spec("fixtures")
    provider = {
        "external_id": 19135003,
        "name": "Bayern vs Dortmund",
        "starting_at": "2025-03-01 17:30:00",
        "state": "FT",
        "result": "2-1",
        "home_score": 2,
        "away_score": 1,
    }
    db = {
        "external_id": 19135003,
        "name": "Bayern vs Dortmund",
        "starting_at": "2025-03-01T17:30:00+00:00",
        "state": "ft",
        "result": "2:1",
        "home_score": 2.0,
        "away_score": 1,
    }

    unified = unify([provider], [db], spec.fields)

    assert unified[0].status == DiffStatus.ok


def test_sort_for_display_puts_problems_first_then_numeric_id():
    unified = unify(
        [
            {"external_id": 10, "name": "ok"},
            {"external_id": 2, "name": "ok"},
            {"external_id": 30, "name": "new"},
            {"external_id": 4, "name": "changed"},
        ],
        [
            {"external_id": 10, "name": "ok"},
            {"external_id": 2, "name": "ok"},
            {"external_id": 4, "name": "old"},
            {"external_id": 5, "name": "gone"},
        ],
        NAME_ONLY,
    )

    ordered = sort_for_display(unified)

    assert [record.external_id for record in ordered] == ["30", "4", "5", "2", "10"]
