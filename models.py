from sqlalchemy import Column, String, Text, DateTime, func
from database import Base


class KeyValueEntry(Base):
    """One JSON document per key (`jobs`, `jobSessions`, `interview_sessions`)."""

    __tablename__ = "kv_store"

    key = Column(String, primary_key=True, index=True)
    value = Column(Text, nullable=False)  # Serialized JSON
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
