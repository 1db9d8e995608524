import uuid
from sqlalchemy import Column, Integer, String, TIMESTAMP, ForeignKey, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql.expression import text
from accessgate.database import Base


class SecurityQuestion(Base):
    """
    Account recovery questions. Answers are stored as bcrypt hashes of the
    normalised answer (lower-cased, whitespace collapsed), never in clear.
    Setting new questions replaces the whole set.
    """
    __tablename__ = "security_questions"
    __table_args__ = (
        UniqueConstraint("user_id", "position", name="uq_security_questions_user_position"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, nullable=False)
    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position = Column(Integer, nullable=False)  # order shown to the user, from 0
    question = Column(String(200), nullable=False)
    answer_hash = Column(String, nullable=False)
    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    # ── Relationships ──────────────────────────────────────────────────────────
    account = relationship("Account", back_populates="security_questions")
