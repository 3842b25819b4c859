# Overview: Service-layer operations for per-cashier series counters; offset bands, advancing, and reassignment.

"""
Per-User Counter Store

Each cashier owns a band of the series' number space:

    band(counter) = [start_offset + 1, start_offset + OR_OFFSET_BAND_SIZE]

Auto-assigned offsets are start_number - 1 + k * OR_OFFSET_BAND_SIZE, using
the smallest k whose band overlaps no existing counter in the series and
holds no already issued number. Because bands never overlap, two cashiers
never contend on a counter row and never produce the same raw number. The
series row is the only shared state.

Counter rows carry a version_id: a concurrent writer on the same counter
fails with StaleDataError and the allocator retries the whole allocation.
"""

from __future__ import annotations

from datetime import date

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import (
    NoActiveSeriesError,
    OffsetCollisionError,
    OffsetOutOfRangeError,
    SeriesExhaustedError,
)
from ..models import IssuedNumber, NumberSeries, SeriesUserCounter, User
from ..time_utils import utcnow
from .concurrency import SequenceConflictError, lock_for_update, run_with_retry
from . import series_service


# Offsets within this distance of another cashier's offset trigger a warning
NEARBY_OFFSET_WINDOW = 50


def band_size() -> int:
    return int(current_app.config.get("OR_OFFSET_BAND_SIZE", 100_000))


def _bands_overlap(offset_a: int, offset_b: int, size: int) -> bool:
    # Bands are [offset + 1, offset + size]
    return offset_a < offset_b + size and offset_b < offset_a + size


def get_counter(series_id: int, user_id: int, *, lock: bool = False) -> SeriesUserCounter | None:
    query = db.session.query(SeriesUserCounter).filter_by(series_id=series_id, user_id=user_id)
    if lock:
        query = lock_for_update(query)
    return query.first()


def list_counters(series_id: int) -> list[SeriesUserCounter]:
    return (
        db.session.query(SeriesUserCounter)
        .filter_by(series_id=series_id)
        .order_by(SeriesUserCounter.start_offset)
        .all()
    )


def _lock_series(series: NumberSeries) -> None:
    # Serializes band assignment within a series (no-op on SQLite, see _recheck_band)
    lock_for_update(db.session.query(NumberSeries).filter(NumberSeries.id == series.id)).first()


def _recheck_band(series: NumberSeries, user_id: int, offset: int) -> None:
    """
    Re-read the series' counters after our write and fail if another band overlaps.

    Two first-time cashiers can both see a band as free before either commits.
    Once our INSERT/UPDATE is flushed we hold the write lock, so the re-read
    sees every committed band; the loser retries and picks the next band.

    Raises:
        SequenceConflictError: another counter claimed an overlapping band (retryable)
    """
    size = band_size()
    clash = (
        db.session.query(SeriesUserCounter)
        .filter(
            SeriesUserCounter.series_id == series.id,
            SeriesUserCounter.user_id != user_id,
            SeriesUserCounter.start_offset > offset - size,
            SeriesUserCounter.start_offset < offset + size,
        )
        .first()
    )
    if clash is not None:
        db.session.rollback()
        raise SequenceConflictError(
            f"Offset {offset} in series {series.id} was claimed concurrently by user {clash.user_id}"
        )


def next_free_offset(series: NumberSeries, *, exclude_user_id: int | None = None) -> int:
    """
    Smallest base + k * band_size whose band is unused in this series.

    A band is unused when no other counter overlaps it and no number inside
    it was ever issued (a cashier moved to another offset leaves issued
    numbers behind).

    Raises:
        SeriesExhaustedError: every band that starts inside the series bounds is taken.
    """
    size = band_size()
    base = series.start_number - 1
    taken = [
        c.start_offset
        for c in list_counters(series.id)
        if exclude_user_id is None or c.user_id != exclude_user_id
    ]

    k = 0
    while True:
        candidate = base + k * size
        if series.end_number is not None and candidate + 1 > series.end_number:
            raise SeriesExhaustedError(
                f"Series '{series.series_name}' has no free offset band of {size} numbers left "
                f"(range {series.start_number}-{series.end_number})"
            )
        if any(_bands_overlap(candidate, offset, size) for offset in taken):
            k += 1
            continue
        if not _issued_in_band(series.id, candidate, size):
            return candidate
        k += 1


def get_or_create_counter(series: NumberSeries, user_id: int, *, lock: bool = True) -> SeriesUserCounter:
    """
    Fetch the cashier's counter, creating it with an auto-assigned band if absent.

    Raises:
        SeriesExhaustedError: no free band left in the series
        SequenceConflictError: another request created the same counter first (retryable)
    """
    counter = get_counter(series.id, user_id, lock=lock)
    if counter is not None:
        return counter

    _lock_series(series)
    offset = next_free_offset(series)
    counter = SeriesUserCounter(
        series_id=series.id,
        user_id=user_id,
        start_offset=offset,
        current_number=0,
        last_generated_number=None,
        is_auto_assigned=True,
        generations_at_current_offset=0,
    )
    db.session.add(counter)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise SequenceConflictError(
            f"Counter for user {user_id} in series {series.id} was created concurrently"
        ) from exc
    _recheck_band(series, user_id, offset)

    current_app.logger.info(
        "Auto-assigned cashier offset %s (user=%s, series=%s)", offset, user_id, series.id
    )
    return counter


def next_number(counter: SeriesUserCounter) -> int:
    """Pure: the raw number the counter would issue next."""
    return counter.next_number()


def advance(counter: SeriesUserCounter) -> SeriesUserCounter:
    """
    Move the counter past its next number.

    The flush compares version_id; a concurrent advance of the same row
    raises StaleDataError, so two callers can never both issue the same number.
    """
    issued = counter.next_number()
    counter.current_number = counter.current_number + 1
    counter.generations_at_current_offset = counter.generations_at_current_offset + 1
    counter.last_generated_number = issued
    db.session.flush()
    return counter


def _issued_in_band(series_id: int, offset: int, size: int) -> int:
    return (
        db.session.query(db.func.count(IssuedNumber.id))
        .filter(
            IssuedNumber.series_id == series_id,
            IssuedNumber.actual_number >= offset + 1,
            IssuedNumber.actual_number <= offset + size,
        )
        .scalar()
    ) or 0


def _validate_offset_bounds(series: NumberSeries, offset: int) -> None:
    if offset < series.start_number - 1:
        raise OffsetOutOfRangeError(
            f"Offset {offset} is below series start ({series.start_number}); "
            f"the lowest offset is {series.start_number - 1}"
        )
    if series.end_number is not None and offset + 1 > series.end_number:
        raise OffsetOutOfRangeError(
            f"Offset {offset} exceeds series limit ({series.end_number})"
        )


def reassign_offset(
    series_id: int,
    user_id: int,
    new_offset: int,
    *,
    changed_by_user_id: int | None = None,
) -> SeriesUserCounter:
    """
    Move (or pre-provision) a cashier's counter to an explicit offset band.

    Resets current_number, last_generated_number and generations_at_current_offset
    so the next number is new_offset + 1.

    Raises:
        OffsetOutOfRangeError: offset outside the series bounds
        OffsetCollisionError: band overlaps another counter or already issued numbers
    """
    def _op() -> SeriesUserCounter:
        series = series_service.get_series(series_id)
        _validate_offset_bounds(series, new_offset)
        size = band_size()

        # Lock order matches the allocator: counter row first, then series row
        counter = get_counter(series.id, user_id, lock=True)
        _lock_series(series)
        if counter is not None and counter.start_offset == new_offset:
            return counter

        for other in list_counters(series.id):
            if other.user_id == user_id:
                continue
            if _bands_overlap(new_offset, other.start_offset, size):
                raise OffsetCollisionError(
                    f"Offset {new_offset} overlaps the band of user {other.user_id} "
                    f"({other.band_first()}-{other.band_last(size)})"
                )

        already_issued = _issued_in_band(series.id, new_offset, size)
        if already_issued:
            raise OffsetCollisionError(
                f"{already_issued} number(s) in {new_offset + 1}-{new_offset + size} were already issued"
            )

        now = utcnow()
        if counter is None:
            counter = SeriesUserCounter(series_id=series.id, user_id=user_id)
            db.session.add(counter)
            old_offset = None
        else:
            old_offset = counter.start_offset
            if counter.generations_at_current_offset == 0:
                current_app.logger.warning(
                    "Offset churn: user %s leaves offset %s in series %s without issuing a number",
                    user_id, old_offset, series.id,
                )

        counter.start_offset = new_offset
        counter.current_number = 0
        counter.last_generated_number = None
        counter.generations_at_current_offset = 0
        counter.is_auto_assigned = False
        counter.offset_changed_at = now

        try:
            db.session.flush()
        except IntegrityError as exc:
            db.session.rollback()
            raise SequenceConflictError(
                f"Counter for user {user_id} in series {series.id} was created concurrently"
            ) from exc
        _recheck_band(series, user_id, new_offset)

        db.session.commit()
        current_app.logger.info(
            "Cashier offset set (user=%s, series=%s, old=%s, new=%s, by=%s)",
            user_id, series.id, old_offset, new_offset, changed_by_user_id,
        )
        return counter

    try:
        return run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise


def check_offset(series_id: int, user_id: int, offset: int) -> dict:
    """
    Dry-run of reassign_offset for a confirmation prompt; never writes.

    Returns {"has_conflicts": bool, "warnings": [...], "info": [...]}.
    """
    series = series_service.get_series(series_id)
    size = band_size()

    try:
        _validate_offset_bounds(series, offset)
    except OffsetOutOfRangeError as exc:
        return {"has_conflicts": True, "warnings": [str(exc)], "info": []}

    warnings = []
    for other in list_counters(series.id):
        if other.user_id == user_id:
            continue
        who = other.user.display_name if other.user else f"user {other.user_id}"
        if _bands_overlap(offset, other.start_offset, size):
            warnings.append(
                f"{who} already owns {other.band_first()}-{other.band_last(size)}, which overlaps offset {offset}."
            )
        elif abs(other.start_offset - offset) <= NEARBY_OFFSET_WINDOW:
            warnings.append(f"{who} is using offset {other.start_offset}, near {offset}.")

    already_issued = _issued_in_band(series.id, offset, size)
    if already_issued:
        warnings.append(f"{already_issued} number(s) in {offset + 1}-{offset + size} were already issued.")

    if warnings:
        return {
            "has_conflicts": True,
            "warnings": warnings,
            "info": [f"Suggested offset: {next_free_offset(series, exclude_user_id=user_id)}"],
        }

    info = []
    counter = get_counter(series.id, user_id)
    if counter is not None and counter.last_generated_number is not None:
        info.append(f"You have generated {counter.current_number} OR(s) at offset {counter.start_offset}.")
    info.append(f"Your next OR will be {offset + 1}.")
    return {"has_conflicts": False, "warnings": [], "info": info}


def get_cashier_info(user_id: int, as_of: date | None = None) -> dict | None:
    """Position of a cashier in the active series, or None when no series is active."""
    try:
        series = series_service.get_active_series(as_of)
    except NoActiveSeriesError:
        return None

    counter = get_counter(series.id, user_id)
    user = db.session.get(User, user_id)
    size = band_size()
    total_generated = (
        db.session.query(db.func.count(IssuedNumber.id))
        .filter(IssuedNumber.series_id == series.id, IssuedNumber.generated_by_user_id == user_id)
        .scalar()
    ) or 0

    return {
        "user_id": user_id,
        "user_name": user.display_name if user else None,
        "series_id": series.id,
        "series_name": series.series_name,
        "has_counter": counter is not None,
        "start_offset": counter.start_offset if counter else None,
        "band": [counter.band_first(), counter.band_last(size)] if counter else None,
        "next_number": counter.next_number() if counter else None,
        "last_generated_number": counter.last_generated_number if counter else None,
        "generations_at_current_offset": counter.generations_at_current_offset if counter else 0,
        "total_generated": total_generated,
        "is_auto_assigned": counter.is_auto_assigned if counter else None,
    }
