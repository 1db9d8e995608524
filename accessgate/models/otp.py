import uuid
from sqlalchemy import Boolean, Column, String, TIMESTAMP, Index, Enum as SAEnum, Uuid
from sqlalchemy.sql.expression import text
from accessgate.database import Base


class OTPChallenge(Base):
    """
    One-time codes for email, device, and location verification.

    - The raw code is never stored, only its HMAC digest (core/security.otp_digest).
    - At most one unconsumed challenge exists per (purpose, subject). Issuing a
      new one marks every earlier unconsumed row consumed first, and the partial
      unique index uq_otp_challenges_open rejects a second open row written by a
      concurrent issue.
    - Rows are never deleted. Consumed or expired rows stay for audit and are
      simply excluded from validation.
    """
    __tablename__ = "otp_challenges"
    __table_args__ = (
        Index("ix_otp_challenges_lookup", "purpose", "subject", "consumed"),
        Index(
            "uq_otp_challenges_open",
            "purpose",
            "subject",
            unique=True,
            postgresql_where=text("NOT consumed"),
            sqlite_where=text("NOT consumed"),
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, nullable=False)
    purpose = Column(
        SAEnum("email", "device", "location", name="otp_purpose"),
        nullable=False,
    )
    subject = Column(String(255), nullable=False, index=True)  # lower-cased email
    code_hash = Column(String(64), nullable=False)
    consumed = Column(Boolean, server_default=text("false"), default=False, nullable=False)
    issued_at = Column(TIMESTAMP(timezone=True), nullable=False)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=False)
    consumed_at = Column(TIMESTAMP(timezone=True), nullable=True)
