"""
Per-cashier counter tests.

Verifies:
- Auto-assigned offsets hand out disjoint bands
- Reassignment validates bounds, band overlap, and issued numbers
- Reassignment resets the counter position
- check_offset is a non-writing dry run
"""

import logging
from datetime import date

import pytest

from orseries.errors import OffsetCollisionError, OffsetOutOfRangeError, SeriesExhaustedError
from orseries.models import SeriesUserCounter, User
from orseries.services import allocation_service, counter_service


BUSINESS_DATE = date(2025, 10, 5)


def _allocate(series, user):
    return allocation_service.allocate(series.id, user.id, BUSINESS_DATE)


# =============================================================================
# AUTO-ASSIGNED BANDS
# =============================================================================


class TestAutoAssignment:

    def test_first_cashier_starts_at_series_start(self, series, cashier_a):
        counter = counter_service.get_or_create_counter(series, cashier_a.id)
        assert counter.start_offset == 0
        assert counter.is_auto_assigned is True
        assert counter_service.next_number(counter) == 1

    def test_second_cashier_gets_next_band(self, series, cashier_a, cashier_b):
        _allocate(series, cashier_a)
        issued = _allocate(series, cashier_b)

        counter_b = counter_service.get_counter(series.id, cashier_b.id)
        assert counter_b.start_offset == 100_000
        assert issued.actual_number == 100_001

    def test_base_follows_start_number(self, make_series, cashier_a):
        s = make_series(start_number=5001, end_number=900_000)
        counter = counter_service.get_or_create_counter(s, cashier_a.id)
        assert counter.start_offset == 5000
        assert counter.next_number() == 5001

    def test_existing_counter_is_reused(self, series, cashier_a):
        first = counter_service.get_or_create_counter(series, cashier_a.id)
        again = counter_service.get_or_create_counter(series, cashier_a.id)
        assert first.id == again.id

    def test_band_size_from_config(self, app, monkeypatch, series, cashier_a, cashier_b):
        monkeypatch.setitem(app.config, "OR_OFFSET_BAND_SIZE", 10)
        _allocate(series, cashier_a)
        assert _allocate(series, cashier_b).actual_number == 11

    def test_no_free_band_left(self, app, db_session, monkeypatch, make_series, cashier_a, cashier_b):
        monkeypatch.setitem(app.config, "OR_OFFSET_BAND_SIZE", 10)
        s = make_series(start_number=1, end_number=20)
        third = User(username="cashier_c", is_active=True)
        db_session.add(third)
        db_session.commit()

        _allocate(s, cashier_a)
        _allocate(s, cashier_b)
        with pytest.raises(SeriesExhaustedError):
            _allocate(s, third)
        assert counter_service.get_counter(s.id, third.id) is None

    def test_freed_band_is_reused(self, app, monkeypatch, series, cashier_a, cashier_b, db_session):
        monkeypatch.setitem(app.config, "OR_OFFSET_BAND_SIZE", 10)
        counter_service.reassign_offset(series.id, cashier_a.id, 10)
        # Band [1, 10] is untouched, so it is the smallest free band
        assert counter_service.next_free_offset(series) == 0

    def test_band_with_issued_numbers_is_not_reused(self, series, cashier_a, cashier_b):
        for _ in range(3):
            _allocate(series, cashier_a)
        counter_service.reassign_offset(series.id, cashier_a.id, 500_000)

        # Band [1, 100000] holds cashier A's first three numbers
        assert counter_service.next_free_offset(series) == 100_000

        issued = _allocate(series, cashier_b)
        assert issued.actual_number == 100_001
        assert counter_service.get_counter(series.id, cashier_b.id).start_offset == 100_000


# =============================================================================
# ADVANCE
# =============================================================================


class TestAdvance:

    def test_advance_moves_past_next_number(self, series, cashier_a, db_session):
        counter = counter_service.get_or_create_counter(series, cashier_a.id)
        counter_service.advance(counter)
        counter_service.advance(counter)
        db_session.commit()

        counter = counter_service.get_counter(series.id, cashier_a.id)
        assert counter.current_number == 2
        assert counter.last_generated_number == 2
        assert counter.generations_at_current_offset == 2
        assert counter.next_number() == 3


# =============================================================================
# REASSIGNMENT
# =============================================================================


class TestReassignOffset:

    def test_reassign_resets_position(self, series, cashier_a):
        _allocate(series, cashier_a)
        _allocate(series, cashier_a)

        counter = counter_service.reassign_offset(series.id, cashier_a.id, 500_000)
        assert counter.start_offset == 500_000
        assert counter.current_number == 0
        assert counter.last_generated_number is None
        assert counter.generations_at_current_offset == 0
        assert counter.is_auto_assigned is False
        assert counter.offset_changed_at is not None

        assert _allocate(series, cashier_a).actual_number == 500_001

    def test_reassign_preprovisions_counter(self, series, cashier_a):
        counter_service.reassign_offset(series.id, cashier_a.id, 300_000)
        assert _allocate(series, cashier_a).actual_number == 300_001

    def test_same_offset_is_noop(self, series, cashier_a):
        _allocate(series, cashier_a)
        counter = counter_service.reassign_offset(series.id, cashier_a.id, 0)
        assert counter.current_number == 1
        assert counter.next_number() == 2

    def test_overlap_with_other_cashier(self, series, cashier_a, cashier_b):
        _allocate(series, cashier_a)
        _allocate(series, cashier_b)  # band 100001-200000
        with pytest.raises(OffsetCollisionError):
            counter_service.reassign_offset(series.id, cashier_a.id, 150_000)

        counter_a = counter_service.get_counter(series.id, cashier_a.id)
        assert counter_a.start_offset == 0

    def test_band_with_issued_numbers_is_blocked(self, series, cashier_a, cashier_b):
        _allocate(series, cashier_a)  # issues 1
        counter_service.reassign_offset(series.id, cashier_a.id, 500_000)
        with pytest.raises(OffsetCollisionError):
            counter_service.reassign_offset(series.id, cashier_b.id, 0)

    @pytest.mark.parametrize("offset", [-1, 999_999, 5_000_000])
    def test_offset_out_of_range(self, series, cashier_a, offset):
        with pytest.raises(OffsetOutOfRangeError):
            counter_service.reassign_offset(series.id, cashier_a.id, offset)

    def test_last_offset_in_range(self, series, cashier_a):
        counter = counter_service.reassign_offset(series.id, cashier_a.id, 999_998)
        assert counter.next_number() == 999_999

    def test_band_past_end_exhausts(self, series, cashier_a):
        counter_service.reassign_offset(series.id, cashier_a.id, 999_998)
        assert _allocate(series, cashier_a).actual_number == 999_999
        with pytest.raises(SeriesExhaustedError):
            _allocate(series, cashier_a)

    def test_churn_is_logged(self, series, cashier_a, caplog):
        counter_service.reassign_offset(series.id, cashier_a.id, 200_000)
        with caplog.at_level(logging.WARNING):
            counter_service.reassign_offset(series.id, cashier_a.id, 300_000)
        assert "Offset churn" in caplog.text

    def test_only_one_counter_row_per_cashier(self, series, cashier_a, db_session):
        _allocate(series, cashier_a)
        counter_service.reassign_offset(series.id, cashier_a.id, 400_000)
        rows = db_session.query(SeriesUserCounter).filter_by(series_id=series.id, user_id=cashier_a.id).count()
        assert rows == 1


# =============================================================================
# DRY RUN AND REPORTING
# =============================================================================


class TestCheckOffset:

    def test_clean_offset(self, series, cashier_a):
        result = counter_service.check_offset(series.id, cashier_a.id, 500_000)
        assert result["has_conflicts"] is False
        assert "Your next OR will be 500001." in result["info"]

    def test_overlap_warns_with_cashier_name(self, series, cashier_a, cashier_b):
        _allocate(series, cashier_b)
        result = counter_service.check_offset(series.id, cashier_a.id, 50_000)
        assert result["has_conflicts"] is True
        assert any("Cashier B" in w for w in result["warnings"])
        assert result["info"] == ["Suggested offset: 100000"]

    def test_nearby_offset_warns(self, app, monkeypatch, series, cashier_a, cashier_b):
        monkeypatch.setitem(app.config, "OR_OFFSET_BAND_SIZE", 10)
        counter_service.reassign_offset(series.id, cashier_b.id, 10)
        result = counter_service.check_offset(series.id, cashier_a.id, 40)
        assert result["has_conflicts"] is True
        assert any("near 40" in w for w in result["warnings"])

    def test_out_of_range(self, series, cashier_a):
        result = counter_service.check_offset(series.id, cashier_a.id, -5)
        assert result["has_conflicts"] is True
        assert result["warnings"]

    def test_dry_run_does_not_write(self, series, cashier_a):
        counter_service.check_offset(series.id, cashier_a.id, 500_000)
        assert counter_service.get_counter(series.id, cashier_a.id) is None


class TestCashierInfo:

    def test_info_without_counter(self, series, cashier_a):
        info = counter_service.get_cashier_info(cashier_a.id, BUSINESS_DATE)
        assert info["has_counter"] is False
        assert info["total_generated"] == 0

    def test_info_with_counter(self, series, cashier_a):
        _allocate(series, cashier_a)
        info = counter_service.get_cashier_info(cashier_a.id, BUSINESS_DATE)
        assert info["start_offset"] == 0
        assert info["band"] == [1, 100_000]
        assert info["next_number"] == 2
        assert info["total_generated"] == 1
        assert info["user_name"] == "Cashier A"

    def test_info_without_active_series(self, db_session, cashier_a):
        assert counter_service.get_cashier_info(cashier_a.id, BUSINESS_DATE) is None
