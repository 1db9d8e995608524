import uuid
from sqlalchemy import Column, String, Float, TIMESTAMP, ForeignKey, Uuid
from accessgate.database import Base


class LocationSampleRecord(Base):
    """
    Where a completed signup/login came from.
    Read back as history for scoring the same user's later attempts.
    """
    __tablename__ = "location_samples"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, nullable=False)
    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    ip = Column(String(64), nullable=False)
    city = Column(String(100), nullable=False)
    country = Column(String(100), nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    observed_at = Column(TIMESTAMP(timezone=True), nullable=False, index=True)
