from __future__ import annotations

from datetime import date

from ..extensions import db
from ..time_utils import to_utc_z, to_iso_date


def _initial_current_number(context) -> int:
    # Nothing issued yet: current_number sits one below the first number
    start = context.get_current_parameters().get("start_number") or 1
    return start - 1


class NumberSeries(db.Model):
    """
    One OR numbering authority (e.g., the BIR-allocated range for a billing period).

    LIFECYCLE:
    1. Created by an administrator when a billing period opens
    2. Activated (supersedes overlapping active series)
    3. Deactivated when superseded (never hard-deleted)
    4. Soft-deleted only for audit retention, and only if nothing was issued

    INVARIANTS:
    - current_number >= start_number - 1
    - end_number set => start_number <= end_number and current_number <= end_number
    - current_number counts total issuance: start_number - 1 + issued count

    CONCURRENCY: current_number is only bumped by an atomic guarded UPDATE
    inside the allocator; version_id lets admin edits detect a concurrent bump.
    """
    __tablename__ = "number_series"
    __table_args__ = (
        db.Index("ix_number_series_effective", "effective_from", "effective_to"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    series_name = db.Column(db.String(255), nullable=False)
    prefix = db.Column(db.String(16), nullable=True)  # e.g. "CR", "OR"

    start_number = db.Column(db.BigInteger, nullable=False, default=1)
    end_number = db.Column(db.BigInteger, nullable=True)  # None = unbounded
    current_number = db.Column(db.BigInteger, nullable=False, default=_initial_current_number)

    # Template, e.g. "{PREFIX}{NUMBER:10}" or "OR-{YEAR}{MONTH}-{NUMBER:6}"
    format = db.Column(db.String(255), nullable=False, default="{PREFIX}{NUMBER:10}")

    is_active = db.Column(db.Boolean, nullable=False, default=False, index=True)
    effective_from = db.Column(db.Date, nullable=False, index=True)
    effective_to = db.Column(db.Date, nullable=True)

    notes = db.Column(db.Text, nullable=True)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    creator = db.relationship("User", foreign_keys=[created_by_user_id])
    __mapper_args__ = {"version_id_col": version_id}

    def is_effective_on(self, as_of: date) -> bool:
        if self.effective_from > as_of:
            return False
        return self.effective_to is None or self.effective_to >= as_of

    def has_reached_limit(self) -> bool:
        if self.end_number is None:
            return False
        return self.current_number >= self.end_number

    def usage_percentage(self) -> float:
        if self.end_number is None:
            return 0.0
        total = self.end_number - self.start_number + 1
        used = self.current_number - self.start_number + 1
        return (used / total) * 100

    def remaining_numbers(self) -> int | None:
        if self.end_number is None:
            return None
        return max(0, self.end_number - self.current_number)

    def is_near_limit(self, threshold: float = 90) -> bool:
        if self.end_number is None:
            return False
        return self.usage_percentage() >= threshold

    def issued_count(self) -> int:
        return self.current_number - (self.start_number - 1)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "series_name": self.series_name,
            "prefix": self.prefix,
            "start_number": self.start_number,
            "end_number": self.end_number,
            "current_number": self.current_number,
            "format": self.format,
            "is_active": self.is_active,
            "effective_from": to_iso_date(self.effective_from),
            "effective_to": to_iso_date(self.effective_to),
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "deleted_at": to_utc_z(self.deleted_at) if self.deleted_at else None,
            "version_id": self.version_id,
        }


class SeriesUserCounter(db.Model):
    """
    A cashier's private allocation window within a series.

    WHY: Each cashier draws from a non-overlapping offset band, so two cashiers
    never contend on the same counter row and never produce the same number.

    BAND: [start_offset + 1, start_offset + band_size]
    NEXT NUMBER: start_offset + current_number + 1 (strictly increasing per row)

    current_number counts numbers issued at the current offset; an offset
    reassignment resets it together with generations_at_current_offset.
    """
    __tablename__ = "series_user_counters"
    __table_args__ = (
        db.UniqueConstraint("series_id", "user_id", name="uq_series_user_counters_series_user"),
        db.Index("ix_series_user_counters_series_offset", "series_id", "start_offset"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    series_id = db.Column(db.Integer, db.ForeignKey("number_series.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    start_offset = db.Column(db.BigInteger, nullable=False)
    current_number = db.Column(db.BigInteger, nullable=False, default=0)
    last_generated_number = db.Column(db.BigInteger, nullable=True)

    is_auto_assigned = db.Column(db.Boolean, nullable=False, default=False)
    offset_changed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    generations_at_current_offset = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    series = db.relationship("NumberSeries", backref=db.backref("user_counters", lazy=True))
    user = db.relationship("User", backref=db.backref("series_counters", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def next_number(self) -> int:
        return self.start_offset + self.current_number + 1

    def band_first(self) -> int:
        return self.start_offset + 1

    def band_last(self, band_size: int) -> int:
        return self.start_offset + band_size

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "series_id": self.series_id,
            "user_id": self.user_id,
            "start_offset": self.start_offset,
            "current_number": self.current_number,
            "next_number": self.next_number(),
            "last_generated_number": self.last_generated_number,
            "is_auto_assigned": self.is_auto_assigned,
            "offset_changed_at": to_utc_z(self.offset_changed_at) if self.offset_changed_at else None,
            "generations_at_current_offset": self.generations_at_current_offset,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
