from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class IssuedNumber(db.Model):
    """
    One allocated OR number (audit trail of every issuance).

    LIFECYCLE:
    1. generated: created by the allocator, not yet bound to a transaction
    2. used: bound to a finalized billing transaction (terminal)
    3. voided: discarded before use, e.g. cashier error (terminal)

    RULES:
    - Status only moves forward: generated -> used | voided
    - Voiding never frees the number for reuse
    - actual_number is unique within a series; or_number is globally unique

    transaction_id points into the billing system's transactions table, which
    this service does not own, so it carries no foreign key.
    """
    __tablename__ = "issued_numbers"
    __table_args__ = (
        db.UniqueConstraint("series_id", "actual_number", name="uq_issued_numbers_series_actual"),
        db.UniqueConstraint("or_number", name="uq_issued_numbers_or_number"),
        db.Index("ix_issued_numbers_series_status", "series_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    series_id = db.Column(db.Integer, db.ForeignKey("number_series.id"), nullable=False, index=True)

    or_number = db.Column(db.String(64), nullable=False)  # formatted, e.g. "CR0000000042"
    actual_number = db.Column(db.BigInteger, nullable=False)  # raw

    generated_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    generated_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    generation_method = db.Column(db.String(16), nullable=False, default="auto")  # auto, manual

    status = db.Column(db.String(16), nullable=False, default="generated", index=True)  # generated, used, voided

    transaction_id = db.Column(db.Integer, nullable=True, index=True)
    used_at = db.Column(db.DateTime(timezone=True), nullable=True)

    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    voided_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    void_reason = db.Column(db.String(255), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    # "metadata" is reserved on declarative classes
    generation_metadata = db.Column("metadata", db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    series = db.relationship("NumberSeries", backref=db.backref("issued_numbers", lazy="dynamic"))
    generated_by = db.relationship("User", foreign_keys=[generated_by_user_id])
    voided_by = db.relationship("User", foreign_keys=[voided_by_user_id])
    __mapper_args__ = {"version_id_col": version_id}

    @classmethod
    def scope_generated(cls):
        return db.session.query(cls).filter(cls.status == "generated")

    @classmethod
    def scope_used(cls):
        return db.session.query(cls).filter(cls.status == "used")

    @classmethod
    def scope_voided(cls):
        return db.session.query(cls).filter(cls.status == "voided")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "series_id": self.series_id,
            "or_number": self.or_number,
            "actual_number": self.actual_number,
            "generated_by_user_id": self.generated_by_user_id,
            "generated_at": to_utc_z(self.generated_at),
            "generation_method": self.generation_method,
            "status": self.status,
            "transaction_id": self.transaction_id,
            "used_at": to_utc_z(self.used_at) if self.used_at else None,
            "voided_at": to_utc_z(self.voided_at) if self.voided_at else None,
            "voided_by_user_id": self.voided_by_user_id,
            "void_reason": self.void_reason,
            "notes": self.notes,
            "metadata": self.generation_metadata,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }
