"""
Ledger: the only shared mutable store the verification engine touches.

Every component depends on the abstract Ledger, never on a concrete session or
singleton, so tests can swap in an in-memory implementation.

Rules all implementations follow:
  - OTP, trusted-device, location, and event records are written independently.
    There are no multi-entity transactions.
  - Challenge consumption is one compare-and-set write keyed on the
    unconsumed state. Never a read followed by a write.
  - Events are append-only.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from accessgate.core.clock import as_utc
from accessgate.core.exceptions import ChallengeConflictError, LedgerError
from accessgate.models.location_sample import LocationSampleRecord
from accessgate.models.otp import OTPChallenge
from accessgate.models.trusted_device import TrustedDevice
from accessgate.models.verification_event import VerificationEvent
from accessgate.schemas.ledger import (
    LocationSample,
    OtpChallenge,
    OtpPurpose,
    TrustedDeviceRecord,
    VerificationEventRecord,
)

logger = logging.getLogger(__name__)

_event_adapter = TypeAdapter(VerificationEventRecord)


class Ledger(ABC):
    # ── OTP challenges ────────────────────────────────────────────────────────
    @abstractmethod
    def invalidate_challenges(self, purpose: OtpPurpose, subject: str, now: datetime) -> int:
        """Mark every unconsumed challenge for (purpose, subject) consumed. Returns count."""

    @abstractmethod
    def put_challenge(self, challenge: OtpChallenge) -> None:
        """
        Raises ChallengeConflictError when an unconsumed challenge for the same
        (purpose, subject) already exists.
        """

    @abstractmethod
    def get_challenge(self, challenge_id: uuid.UUID) -> Optional[OtpChallenge]: ...

    @abstractmethod
    def consume_challenge(
        self, purpose: OtpPurpose, subject: str, code_hash: str, now: datetime
    ) -> bool:
        """
        Atomically flip one unconsumed, unexpired matching challenge to consumed.
        Returns True only for the caller whose write took effect.
        """

    # ── Events ────────────────────────────────────────────────────────────────
    @abstractmethod
    def append_event(self, event) -> None: ...

    @abstractmethod
    def latest_flow_event(self, flow_id: uuid.UUID):
        """Newest event of a flow, or None."""

    @abstractmethod
    def latest_event(self, user_id: uuid.UUID, event_types: Iterable[str]):
        """Newest event of the given types for a user, or None."""

    @abstractmethod
    def flow_events(self, flow_id: uuid.UUID) -> list:
        """All events of a flow, oldest first."""

    # ── Trusted devices ───────────────────────────────────────────────────────
    @abstractmethod
    def put_trusted_device(self, record: TrustedDeviceRecord) -> None: ...

    @abstractmethod
    def active_trusted_devices(self, user_id: uuid.UUID, now: datetime) -> list[TrustedDeviceRecord]: ...

    # ── Location history ──────────────────────────────────────────────────────
    @abstractmethod
    def put_location_sample(self, user_id: uuid.UUID, sample: LocationSample) -> None: ...

    @abstractmethod
    def location_history(self, user_id: uuid.UUID, limit: int) -> list[LocationSample]:
        """Most recent samples first."""


def decode_event(event_type: str, payload: dict):
    """
    Decode a stored event row into its tagged variant.
    Returns None for rows that cannot be decoded at all (unknown type, missing
    identity fields); field-level damage is absorbed by the variants themselves.
    """
    try:
        return _event_adapter.validate_python({**payload, "event_type": event_type})
    except ValidationError as exc:
        logger.warning(f"Undecodable verification event of type {event_type}: {exc.error_count()} errors")
        return None


class SqlLedger(Ledger):
    """Ledger over a SQLAlchemy session. Each write commits on its own."""

    def __init__(self, db: Session):
        self.db = db

    def _commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise LedgerError(f"Ledger write failed: {exc.__class__.__name__}") from exc

    # ── OTP challenges ────────────────────────────────────────────────────────
    def invalidate_challenges(self, purpose: OtpPurpose, subject: str, now: datetime) -> int:
        result = self.db.execute(
            update(OTPChallenge)
            .where(
                OTPChallenge.purpose == purpose.value,
                OTPChallenge.subject == subject,
                OTPChallenge.consumed == False,  # noqa: E712
            )
            .values(consumed=True, consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        self._commit()
        return result.rowcount or 0

    def put_challenge(self, challenge: OtpChallenge) -> None:
        self.db.add(
            OTPChallenge(
                id=challenge.id,
                purpose=challenge.purpose.value,
                subject=challenge.subject,
                code_hash=challenge.code_hash,
                consumed=challenge.consumed,
                issued_at=challenge.issued_at,
                expires_at=challenge.expires_at,
                consumed_at=challenge.consumed_at,
            )
        )
        try:
            self.db.commit()
        except IntegrityError as exc:
            # uq_otp_challenges_open: one unconsumed row per (purpose, subject)
            self.db.rollback()
            raise ChallengeConflictError(f"Open {challenge.purpose.value} challenge already exists") from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise LedgerError(f"Ledger write failed: {exc.__class__.__name__}") from exc

    def get_challenge(self, challenge_id: uuid.UUID) -> Optional[OtpChallenge]:
        row = self.db.get(OTPChallenge, challenge_id)
        if row is None:
            return None
        return OtpChallenge(
            id=row.id,
            purpose=OtpPurpose(row.purpose),
            subject=row.subject,
            code_hash=row.code_hash,
            consumed=row.consumed,
            issued_at=as_utc(row.issued_at),
            expires_at=as_utc(row.expires_at),
            consumed_at=as_utc(row.consumed_at) if row.consumed_at else None,
        )

    def consume_challenge(
        self, purpose: OtpPurpose, subject: str, code_hash: str, now: datetime
    ) -> bool:
        # Single conditional UPDATE: concurrent callers race on consumed = false
        # and the database lets exactly one of them change the row.
        result = self.db.execute(
            update(OTPChallenge)
            .where(
                OTPChallenge.purpose == purpose.value,
                OTPChallenge.subject == subject,
                OTPChallenge.code_hash == code_hash,
                OTPChallenge.consumed == False,  # noqa: E712
                OTPChallenge.expires_at > now,
            )
            .values(consumed=True, consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        self._commit()
        return (result.rowcount or 0) == 1

    # ── Events ────────────────────────────────────────────────────────────────
    def append_event(self, event) -> None:
        payload = event.model_dump(mode="json", exclude={"event_type"})
        self.db.add(
            VerificationEvent(
                id=event.id,
                user_id=event.user_id,
                flow_id=event.flow_id,
                event_type=event.event_type,
                state=event.state.value,
                payload=payload,
                created_at=event.created_at,
            )
        )
        self._commit()

    def _decode(self, row: Optional[VerificationEvent]):
        if row is None:
            return None
        return decode_event(row.event_type, row.payload or {})

    def latest_flow_event(self, flow_id: uuid.UUID):
        row = (
            self.db.query(VerificationEvent)
            .filter(VerificationEvent.flow_id == flow_id)
            .order_by(VerificationEvent.seq.desc())
            .first()
        )
        return self._decode(row)

    def latest_event(self, user_id: uuid.UUID, event_types: Iterable[str]):
        row = (
            self.db.query(VerificationEvent)
            .filter(
                VerificationEvent.user_id == user_id,
                VerificationEvent.event_type.in_(list(event_types)),
            )
            .order_by(VerificationEvent.seq.desc())
            .first()
        )
        return self._decode(row)

    def flow_events(self, flow_id: uuid.UUID) -> list:
        rows = (
            self.db.query(VerificationEvent)
            .filter(VerificationEvent.flow_id == flow_id)
            .order_by(VerificationEvent.seq.asc())
            .all()
        )
        return [e for e in (self._decode(r) for r in rows) if e is not None]

    # ── Trusted devices ───────────────────────────────────────────────────────
    def put_trusted_device(self, record: TrustedDeviceRecord) -> None:
        self.db.add(
            TrustedDevice(
                id=record.id,
                user_id=record.user_id,
                device_id=record.device_id,
                first_seen_ip=record.first_seen_ip,
                first_seen_city=record.first_seen_city,
                first_seen_country=record.first_seen_country,
                trusted_until=record.trusted_until,
                created_at=record.created_at,
            )
        )
        self._commit()

    def active_trusted_devices(self, user_id: uuid.UUID, now: datetime) -> list[TrustedDeviceRecord]:
        rows = (
            self.db.query(TrustedDevice)
            .filter(TrustedDevice.user_id == user_id, TrustedDevice.trusted_until > now)
            .order_by(TrustedDevice.created_at.desc())
            .all()
        )
        return [
            TrustedDeviceRecord(
                id=r.id,
                user_id=r.user_id,
                device_id=r.device_id,
                first_seen_ip=r.first_seen_ip,
                first_seen_city=r.first_seen_city,
                first_seen_country=r.first_seen_country,
                trusted_until=as_utc(r.trusted_until),
                created_at=as_utc(r.created_at),
            )
            for r in rows
        ]

    # ── Location history ──────────────────────────────────────────────────────
    def put_location_sample(self, user_id: uuid.UUID, sample: LocationSample) -> None:
        self.db.add(
            LocationSampleRecord(
                user_id=user_id,
                ip=sample.ip,
                city=sample.city,
                country=sample.country,
                latitude=sample.latitude,
                longitude=sample.longitude,
                observed_at=sample.observed_at,
            )
        )
        self._commit()

    def location_history(self, user_id: uuid.UUID, limit: int) -> list[LocationSample]:
        rows = (
            self.db.query(LocationSampleRecord)
            .filter(LocationSampleRecord.user_id == user_id)
            .order_by(LocationSampleRecord.observed_at.desc())
            .limit(limit)
            .all()
        )
        return [
            LocationSample(
                ip=r.ip,
                city=r.city,
                country=r.country,
                latitude=r.latitude,
                longitude=r.longitude,
                observed_at=as_utc(r.observed_at),
            )
            for r in rows
        ]
