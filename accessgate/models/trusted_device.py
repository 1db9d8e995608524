import uuid
from sqlalchemy import Column, String, TIMESTAMP, ForeignKey, Uuid
from sqlalchemy.orm import relationship
from accessgate.database import Base


class TrustedDevice(Base):
    """
    A device the user explicitly chose to trust after a verified login.
    Expires by time (trusted_until); revocation is owned by the admin surface.
    """
    __tablename__ = "trusted_devices"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, nullable=False)
    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    device_id = Column(String(255), nullable=False)  # serialized DeviceIdentity.raw_id
    first_seen_ip = Column(String(64), nullable=True)
    first_seen_city = Column(String(100), nullable=True)
    first_seen_country = Column(String(100), nullable=True)
    trusted_until = Column(TIMESTAMP(timezone=True), nullable=False, index=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)

    # ── Relationships ──────────────────────────────────────────────────────────
    account = relationship("Account", back_populates="trusted_devices")
