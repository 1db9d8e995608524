"""
Account Directory: the identity store the verification engine asks
"do these credentials belong to someone?".

The engine depends on the AccountDirectory interface only. SqlAccountDirectory
is the default implementation over the accounts table.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from accessgate.core.exceptions import ConflictException, UpstreamUnavailableError
from accessgate.core.security import hash_password, pwd_context, verify_password
from accessgate.models.account import Account
from accessgate.models.security_question import SecurityQuestion
from accessgate.services.otp_service import normalize_subject

logger = logging.getLogger(__name__)

# Pre-computed bcrypt hash used ONLY for constant-time comparison when the
# account doesn't exist, so "wrong email" and "wrong password" take equally long.
_DUMMY_HASH: str = pwd_context.hash("__dummy_timing_prevention__")


def normalize_answer(answer: str) -> str:
    """Answers compare case-insensitively with whitespace collapsed."""
    return " ".join(str(answer or "").lower().split())


class AccountDirectory(ABC):
    @abstractmethod
    def verify_credentials(self, email: str, password: str) -> Optional[uuid.UUID]:
        """User id when email+password match, otherwise None."""

    @abstractmethod
    def get_profile(self, user_id: uuid.UUID) -> Optional[dict]: ...

    @abstractmethod
    def create_account(self, email: str, password: str, full_name: Optional[str] = None) -> uuid.UUID: ...

    @abstractmethod
    def set_security_questions(self, user_id: uuid.UUID, items: list[tuple[str, str]]) -> list[str]:
        """Replace the user's questions with (question, answer) pairs. Returns the questions."""

    @abstractmethod
    def security_questions(self, user_id: uuid.UUID) -> list[str]: ...

    @abstractmethod
    def check_security_answers(self, user_id: uuid.UUID, answers: list[str]) -> int:
        """Number of answers that match, compared in question order."""


class SqlAccountDirectory(AccountDirectory):
    def __init__(self, db: Session):
        self.db = db

    def verify_credentials(self, email: str, password: str) -> Optional[uuid.UUID]:
        email = normalize_subject(email)
        try:
            account = self.db.query(Account).filter(Account.email == email).first()
        except SQLAlchemyError as exc:
            raise UpstreamUnavailableError("account directory", exc.__class__.__name__) from exc

        # Always run verify_password, even for unknown emails
        password_ok = verify_password(password, account.hashed_password if account else _DUMMY_HASH)
        if not account or not password_ok:
            return None
        return account.id

    def get_profile(self, user_id: uuid.UUID) -> Optional[dict]:
        try:
            account = self.db.get(Account, user_id)
        except SQLAlchemyError as exc:
            raise UpstreamUnavailableError("account directory", exc.__class__.__name__) from exc
        if account is None:
            return None
        return {
            "id": str(account.id),
            "email": account.email,
            "full_name": account.full_name,
            **(account.attributes or {}),
        }

    def create_account(self, email: str, password: str, full_name: Optional[str] = None) -> uuid.UUID:
        """
        Creates the account only; nothing is trusted yet. The signup flow that
        follows proves the email, device and location.
        """
        email = normalize_subject(email)
        if self.db.query(Account).filter(Account.email == email).first():
            raise ConflictException("An account with this email already exists")

        account = Account(
            email=email,
            hashed_password=hash_password(password),
            full_name=full_name,
            attributes={},
        )
        self.db.add(account)
        try:
            self.db.commit()
        except IntegrityError as exc:
            # Lost a race with a concurrent signup for the same email
            self.db.rollback()
            raise ConflictException("An account with this email already exists") from exc
        self.db.refresh(account)
        logger.info(f"Account created: {account.id}")
        return account.id

    # ── Security questions ────────────────────────────────────────────────────

    def _question_rows(self, user_id: uuid.UUID) -> list[SecurityQuestion]:
        try:
            return (
                self.db.query(SecurityQuestion)
                .filter(SecurityQuestion.user_id == user_id)
                .order_by(SecurityQuestion.position)
                .all()
            )
        except SQLAlchemyError as exc:
            raise UpstreamUnavailableError("account directory", exc.__class__.__name__) from exc

    def set_security_questions(self, user_id: uuid.UUID, items: list[tuple[str, str]]) -> list[str]:
        try:
            self.db.query(SecurityQuestion).filter(SecurityQuestion.user_id == user_id).delete()
            for position, (question, answer) in enumerate(items):
                self.db.add(
                    SecurityQuestion(
                        user_id=user_id,
                        position=position,
                        question=question.strip(),
                        answer_hash=hash_password(normalize_answer(answer)),
                    )
                )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise UpstreamUnavailableError("account directory", exc.__class__.__name__) from exc
        logger.info(f"Security questions set for user {user_id}: {len(items)}")
        return [question.strip() for question, _ in items]

    def security_questions(self, user_id: uuid.UUID) -> list[str]:
        return [row.question for row in self._question_rows(user_id)]

    def check_security_answers(self, user_id: uuid.UUID, answers: list[str]) -> int:
        # Every answer is hashed and compared, so timing does not reveal which one was wrong
        rows = self._question_rows(user_id)
        return sum(
            1
            for row, answer in zip(rows, answers)
            if verify_password(normalize_answer(answer), row.answer_hash)
        )
