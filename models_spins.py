from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from extensions import db


class EmailClaim(db.Model):
    """Every successful spin claim. Rows are never deleted."""

    __tablename__ = "email_claims"

    id = Column(Integer, primary_key=True)
    email = Column(String(254), nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_email_claims_created_at", "created_at"),
    )

    def to_dict(self):
        return {
            "email": self.email,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class LedgerRecord(db.Model):
    """Persisted ledger state and recent wins, one JSON payload per key."""

    __tablename__ = "spin_ledger_records"

    key = Column(String(300), primary_key=True)
    payload = Column(Text, nullable=False, default="{}")
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
