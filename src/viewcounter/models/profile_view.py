from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, String

from .base import Base


def _utcnow():
    return datetime.now(timezone.utc)


class ProfileView(Base):
    __tablename__ = "profile_views"

    service = Column(String, primary_key=True)
    username = Column(String, primary_key=True)
    count = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self):
        return f"<ProfileView(service='{self.service}', username='{self.username}', count={self.count})>"
