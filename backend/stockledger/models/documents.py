from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z, utcnow


class DocumentSequence(db.Model):
    """
    Atomic daily document sequences.

    One row per (prefix, business_day), e.g. ("PO", "20260314"). The row is
    advanced with a single UPDATE ... SET next_number = next_number + 1 so two
    concurrent creations on the same day never receive the same number.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("prefix", "business_day", name="uq_doc_sequences_prefix_day"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    prefix = db.Column(db.String(16), nullable=False, index=True)
    business_day = db.Column(db.String(8), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "prefix": self.prefix,
            "business_day": self.business_day,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
