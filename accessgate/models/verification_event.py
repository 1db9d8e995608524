import uuid
from sqlalchemy import Column, Integer, String, TIMESTAMP, JSON, Index, Uuid
from accessgate.database import Base


class VerificationEvent(Base):
    """
    Append-only log of verification steps.

    Records are INSERT-only: never updated or deleted. The orchestrator
    rebuilds a flow's state from the newest row for its flow_id, and the next
    attempt's device/location baseline from the newest *_completed row for
    the user.

    seq gives a strict insertion order; created_at can tie within a request.
    """
    __tablename__ = "verification_events"
    __table_args__ = (
        Index("ix_verification_events_user_type", "user_id", "event_type", "seq"),
        Index("ix_verification_events_flow", "flow_id", "seq"),
    )

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(Uuid(as_uuid=True), unique=True, default=uuid.uuid4, nullable=False)
    user_id = Column(Uuid(as_uuid=True), nullable=False)
    flow_id = Column(Uuid(as_uuid=True), nullable=False)
    # e.g. "credentials_verified", "device_verification", "login_completed"
    event_type = Column(String(50), nullable=False)
    # Flow state after this event, e.g. "DEVICE_CHECK", "COMPLETE"
    state = Column(String(40), nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, index=True)
