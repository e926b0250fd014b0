"""
Recent Action Model - short-lived idempotency records

The composite primary key gives the atomic insert-if-absent guarantee:
a second insert of the same (actor_id, key) fails with IntegrityError.
"""
from datetime import datetime
from sqlalchemy import Column, BigInteger, String, DateTime, PrimaryKeyConstraint

from app.db.database import Base


class RecentAction(Base):
    __tablename__ = "recent_actions"

    actor_id = Column(BigInteger, nullable=False)
    key = Column(String(40), nullable=False)  # sha1 hex
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        PrimaryKeyConstraint("actor_id", "key", name="pk_recent_actions"),
    )
