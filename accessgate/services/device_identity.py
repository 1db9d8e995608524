"""
Device identity: derive, parse, compare, and migrate device ids.

Three id shapes exist in stored data:
  legacy-random  a bare UUID, issued client-side before fingerprinting existed
  hardware       device-{8 hex}, a hash of stable hardware traits only
  hybrid         hybrid-{ipHash}-{hardwareFingerprint}-{persistentId}

IP alone is too volatile (NAT, mobile networks) and a hardware hash alone is
defeated by a fresh browser profile, so the hybrid id combines both with a
token the client persists. Two hybrid ids are the same device when enough of
the three components match (DeviceMatchPolicy.min_matching_components, 1 by
default).
"""
import hashlib
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from fastapi import Request

from accessgate.config import settings
from accessgate.core.clock import RandomSource, as_utc, system_random
from accessgate.schemas.ledger import UNKNOWN_DEVICE_ID
from accessgate.schemas.verification import HardwareCharacteristics

SENTINEL = "unknown"
_HASH_LEN = 8

_HYBRID_RE = re.compile(r"^hybrid-([0-9a-f]{8})-([0-9a-f]{8})-([A-Za-z0-9_\-]{1,128})$")
_HARDWARE_RE = re.compile(r"^device-([0-9a-f]{8})$")


class DeviceScheme(str, Enum):
    LEGACY_RANDOM = "legacy-random"
    HARDWARE = "hardware"
    HYBRID = "hybrid"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class DeviceIdentity:
    scheme: DeviceScheme
    raw_id: str
    ip_hash: str = SENTINEL
    hardware_fingerprint: str = SENTINEL
    persistent_id: str = SENTINEL
    legacy_id: str = SENTINEL

    @property
    def is_hybrid(self) -> bool:
        return self.scheme == DeviceScheme.HYBRID

    @property
    def is_legacy(self) -> bool:
        return self.scheme == DeviceScheme.LEGACY_RANDOM


@dataclass(frozen=True)
class DeviceMatchPolicy:
    """
    min_matching_components: how many of persistentId / hardwareFingerprint /
    ipHash must agree between two hybrid ids. 1 reproduces the permissive
    any-match rule; 2 resists a spoofed persistent token.

    legacy_migration_until: while now is before this instant, a legacy id is
    treated as the same device as any hybrid id. None means closed.
    """
    min_matching_components: int = 1
    legacy_migration_until: Optional[datetime] = None
    now: Optional[datetime] = field(default=None, compare=False)

    @property
    def legacy_migration_open(self) -> bool:
        if self.legacy_migration_until is None or self.now is None:
            return False
        return as_utc(self.now) < as_utc(self.legacy_migration_until)


def policy_from_settings(now: datetime) -> DeviceMatchPolicy:
    return DeviceMatchPolicy(
        min_matching_components=max(1, min(3, settings.device_min_matching_components)),
        legacy_migration_until=settings.legacy_device_migration_until,
        now=now,
    )


# ── Derivation ────────────────────────────────────────────────────────────────

def _short_hash(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:_HASH_LEN]


def hash_ip(client_ip: str) -> str:
    return _short_hash((client_ip or "").strip())


def hardware_fingerprint(hardware: HardwareCharacteristics) -> str:
    stable = "|".join(
        [
            hardware.platform.strip(),
            hardware.screen_resolution,
            str(hardware.hardware_concurrency),
            str(hardware.max_touch_points),
            str(hardware.color_depth),
            # 2.0 and 2 must hash the same
            f"{hardware.pixel_ratio:g}",
        ]
    )
    return _short_hash(stable)


def derive_hybrid(
    client_ip: str,
    hardware: HardwareCharacteristics,
    persistent_token: str,
) -> DeviceIdentity:
    ip_hash = hash_ip(client_ip)
    fingerprint = hardware_fingerprint(hardware)
    persistent_id = persistent_token.strip()
    return DeviceIdentity(
        scheme=DeviceScheme.HYBRID,
        raw_id=f"hybrid-{ip_hash}-{fingerprint}-{persistent_id}",
        ip_hash=ip_hash,
        hardware_fingerprint=fingerprint,
        persistent_id=persistent_id,
    )


def issue_persistent_token(rng: RandomSource = system_random) -> str:
    """Random token the client stores once and replays on every request."""
    return f"persist-{rng.token(12)}"


def unknown_identity(raw_id: str = UNKNOWN_DEVICE_ID) -> DeviceIdentity:
    return DeviceIdentity(scheme=DeviceScheme.UNKNOWN, raw_id=raw_id)


# ── Parsing ───────────────────────────────────────────────────────────────────

def parse(raw_id: Optional[str]) -> DeviceIdentity:
    """
    Parse any stored id shape. Malformed input yields an UNKNOWN identity
    whose components are all the sentinel; this never raises.
    """
    if not isinstance(raw_id, str):
        return unknown_identity()
    value = raw_id.strip()
    if not value:
        return unknown_identity()

    match = _HYBRID_RE.match(value)
    if match:
        ip_hash, fingerprint, persistent_id = match.groups()
        return DeviceIdentity(
            scheme=DeviceScheme.HYBRID,
            raw_id=value,
            ip_hash=ip_hash,
            hardware_fingerprint=fingerprint,
            persistent_id=persistent_id,
        )

    match = _HARDWARE_RE.match(value)
    if match:
        return DeviceIdentity(
            scheme=DeviceScheme.HARDWARE,
            raw_id=value,
            hardware_fingerprint=match.group(1),
        )

    try:
        legacy = uuid.UUID(value)
    except ValueError:
        return unknown_identity(value)
    return DeviceIdentity(
        scheme=DeviceScheme.LEGACY_RANDOM,
        raw_id=value,
        legacy_id=str(legacy),
    )


# ── Comparison ────────────────────────────────────────────────────────────────

def matching_components(a: DeviceIdentity, b: DeviceIdentity) -> int:
    pairs = (
        (a.persistent_id, b.persistent_id),
        (a.hardware_fingerprint, b.hardware_fingerprint),
        (a.ip_hash, b.ip_hash),
    )
    return sum(1 for x, y in pairs if x != SENTINEL and x == y)


def same_device(
    a: DeviceIdentity,
    b: DeviceIdentity,
    policy: DeviceMatchPolicy = DeviceMatchPolicy(),
) -> bool:
    """
    Symmetric in a and b.

    - both hybrid: at least policy.min_matching_components components agree
    - one legacy, one hybrid: true only while the migration window is open
    - unknown on either side: never the same device
    - otherwise: exact raw id equality
    """
    if a.scheme == DeviceScheme.UNKNOWN or b.scheme == DeviceScheme.UNKNOWN:
        return False
    if a.is_hybrid and b.is_hybrid:
        return matching_components(a, b) >= policy.min_matching_components
    if (a.is_legacy and b.is_hybrid) or (a.is_hybrid and b.is_legacy):
        return policy.legacy_migration_open
    return a.raw_id == b.raw_id


def migrate(stored_raw_id: Optional[str], observed_raw_id: Optional[str]) -> Optional[str]:
    """
    Legacy stored id + hybrid observed id: return the hybrid id so the stored
    record gets upgraded. Anything else: the stored id unchanged.
    Applying it twice gives the same result as applying it once.
    """
    stored = parse(stored_raw_id)
    observed = parse(observed_raw_id)
    if stored.is_legacy and observed.is_hybrid:
        return observed.raw_id
    return stored_raw_id


# ── Request helpers ───────────────────────────────────────────────────────────

def client_ip(request: Request) -> str:
    """
    Caller IP. Proxy headers are only honoured when trust_proxy_headers is on
    and the socket peer is one of settings.trusted_proxies; otherwise the peer
    address is the caller.
    """
    peer = request.client.host if request.client and request.client.host else "127.0.0.1"
    if not settings.trust_proxy_headers or peer not in settings.trusted_proxies_set:
        return peer

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    return peer
