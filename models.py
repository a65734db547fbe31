from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()
def utcnow(): return datetime.now(timezone.utc)

class StorageEntry(Base):
    """One key of the device-local storage; values are JSON or plain strings."""
    __tablename__ = "local_storage"
    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
