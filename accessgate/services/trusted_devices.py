"""
Trusted devices: devices a signed-in user explicitly vouched for.

A trusted record lasts trusted_device_days (90) and is consulted by the
device check alongside the device from the last completed sign-in.
"""
import logging
import uuid
from datetime import timedelta

from accessgate.config import settings
from accessgate.core.clock import Clock, system_clock
from accessgate.schemas.ledger import LocationSample, TrustedDeviceRecord
from accessgate.services.device_identity import DeviceIdentity
from accessgate.services.ledger import Ledger

logger = logging.getLogger(__name__)


def trust_device(
    ledger: Ledger,
    user_id: uuid.UUID,
    device: DeviceIdentity,
    first_seen: LocationSample,
    clock: Clock = system_clock,
) -> TrustedDeviceRecord:
    now = clock.now()
    record = TrustedDeviceRecord(
        user_id=user_id,
        device_id=device.raw_id,
        first_seen_ip=first_seen.ip,
        first_seen_city=first_seen.city,
        first_seen_country=first_seen.country,
        trusted_until=now + timedelta(days=settings.trusted_device_days),
        created_at=now,
    )
    ledger.put_trusted_device(record)
    logger.info(f"Device trusted for user {user_id} until {record.trusted_until.isoformat()}")
    return record


def list_trusted_devices(
    ledger: Ledger,
    user_id: uuid.UUID,
    clock: Clock = system_clock,
) -> list[TrustedDeviceRecord]:
    """Unexpired records only, newest first."""
    return ledger.active_trusted_devices(user_id, clock.now())
