import uuid
from sqlalchemy import Column, String, TIMESTAMP, JSON, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql.expression import text
from accessgate.database import Base


class Account(Base):
    """
    Default backing store for the Account Directory.

    The verification engine only ever sees this table through
    services/account_directory.py; deployments with an external identity
    provider replace that adapter and can drop this table.
    """
    __tablename__ = "accounts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    hashed_password = Column(String, nullable=False)
    full_name = Column(String(100), nullable=True)
    # Free-form profile attributes exposed via get_profile()
    attributes = Column(JSON, nullable=True)
    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    # ── Relationships ──────────────────────────────────────────────────────────
    trusted_devices = relationship("TrustedDevice", back_populates="account", cascade="all, delete-orphan")
    security_questions = relationship(
        "SecurityQuestion",
        back_populates="account",
        cascade="all, delete-orphan",
        order_by="SecurityQuestion.position",
    )
