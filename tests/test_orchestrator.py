"""End-to-end flow scenarios through the orchestrator, on the SQL ledger."""
import uuid
from dataclasses import replace
from datetime import timedelta

import pytest

from accessgate.core.exceptions import LedgerError
from accessgate.core.security import decode_flow_token
from accessgate.schemas.ledger import FlowKind, FlowState, LocationSample
from accessgate.schemas.verification import (
    Coordinates, DeviceSignals, ErrorKind, HardwareCharacteristics, NextAction,
)
from accessgate.services import device_identity, trusted_devices
from accessgate.services.device_identity import DeviceMatchPolicy
from accessgate.services.orchestrator import VerificationOrchestrator

EMAIL = "alice@example.com"
HOME_IP = "203.0.113.7"
CAFE_IP = "198.51.100.23"


def signals(token="persist-home0001", platform="MacIntel"):
    return DeviceSignals(
        hardware=HardwareCharacteristics(
            platform=platform,
            screen_resolution="2560x1440",
            hardware_concurrency=8,
            max_touch_points=0,
            color_depth=24,
            pixel_ratio=2.0,
        ),
        persistent_token=token,
    )


@pytest.fixture(autouse=True)
def places(geolocation):
    geolocation.place(HOME_IP, "Berlin", "Germany")
    geolocation.place(CAFE_IP, "Berlin", "Germany")
    geolocation.place("198.51.100.99", "Lyon", "France")
    geolocation.place("198.51.100.66", "Moscow", "Russia")


async def complete_signup(orchestrator, notifier, password, ip=HOME_IP, device=None):
    started = await orchestrator.begin_credential_check(EMAIL, password, FlowKind.SIGNUP)
    token = started.detail["flow_token"]

    device_step = await orchestrator.check_device(token, ip, device or signals())
    assert device_step.status == "challenge_required"
    await orchestrator.verify_otp(token, notifier.last_code(EMAIL))

    location_step = await orchestrator.check_location(token, ip)
    assert location_step.status == "challenge_required"
    return await orchestrator.verify_location_otp(token, notifier.last_code(EMAIL))


async def start_login(orchestrator, password):
    result = await orchestrator.begin_credential_check(EMAIL, password, FlowKind.LOGIN)
    assert result.status == "advance"
    return result.detail["flow_token"]


# ── Scenarios ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_first_time_signup_reaches_full_score(orchestrator, notifier, account_id, password):
    started = await orchestrator.begin_credential_check(EMAIL, password, FlowKind.SIGNUP)
    assert started.status == "advance"
    assert started.next_state == FlowState.DEVICE_CHECK
    token = started.detail["flow_token"]

    device_step = await orchestrator.check_device(token, HOME_IP, signals())
    assert device_step.status == "challenge_required"
    assert device_step.next_state == FlowState.OTP_CHALLENGE
    assert device_step.detail["purpose"] == "email"

    code = notifier.last_code(EMAIL)
    assert len(code) == 6
    otp_step = await orchestrator.verify_otp(token, code)
    assert otp_step.next_state == FlowState.LOCATION_CHECK

    location_step = await orchestrator.check_location(token, HOME_IP)
    assert location_step.status == "challenge_required"
    assert location_step.next_state == FlowState.LOCATION_OTP_CHALLENGE
    assert location_step.detail["risk_score"] == 75

    done = await orchestrator.verify_location_otp(token, notifier.last_code(EMAIL))
    assert done.status == "advance"
    assert done.next_state == FlowState.COMPLETE
    assert done.detail["security"]["score"] == 100
    assert done.detail["security"]["tier"] == "low"
    assert done.detail["access_token"]
    assert done.detail["profile"]["email"] == EMAIL


@pytest.mark.asyncio
async def test_returning_user_same_device_and_city_gets_no_otp(
    orchestrator, notifier, account_id, password
):
    await complete_signup(orchestrator, notifier, password)
    sent_before = len(notifier.sent)

    token = await start_login(orchestrator, password)
    # Different network, same persistent token: matches on persistentId
    device_step = await orchestrator.check_device(token, CAFE_IP, signals())
    assert device_step.status == "advance"
    assert device_step.next_state == FlowState.LOCATION_CHECK

    done = await orchestrator.check_location(token, CAFE_IP)
    assert done.next_state == FlowState.COMPLETE
    assert len(notifier.sent) == sent_before

    latest = orchestrator.ledger.latest_event(account_id, ("login_completed",))
    assert latest.risk_score == 10
    assert latest.factors.trusted_device is True
    assert latest.factors.additional_verification is False
    assert latest.security_score == 75


@pytest.mark.asyncio
async def test_stale_code_reuse_is_rejected(orchestrator, notifier, rng, account_id, password):
    await complete_signup(orchestrator, notifier, password)
    token = await start_login(orchestrator, password)

    rng.queue_code("482913")
    await orchestrator.check_device(token, "198.51.100.99", signals("persist-laptop02", platform="Win32"))
    assert notifier.last_code(EMAIL) == "482913"

    first = await orchestrator.verify_otp(token, "482913")
    assert first.status == "advance"

    replay = await orchestrator.verify_otp(token, "482913")
    assert replay.status == "failed"
    assert replay.error == ErrorKind.CHALLENGE_EXPIRED_OR_WRONG
    # Already past the device code: the location step is next, not a resend
    assert replay.next_state == FlowState.LOCATION_CHECK
    assert replay.hint == NextAction.RETRY


@pytest.mark.asyncio
async def test_device_code_replayed_during_location_challenge_offers_resend(
    orchestrator, notifier, account_id, password
):
    started = await orchestrator.begin_credential_check(EMAIL, password, FlowKind.SIGNUP)
    token = started.detail["flow_token"]
    await orchestrator.check_device(token, HOME_IP, signals())
    device_code = notifier.last_code(EMAIL)
    await orchestrator.verify_otp(token, device_code)
    await orchestrator.check_location(token, HOME_IP)

    replay = await orchestrator.verify_otp(token, device_code)
    assert replay.status == "failed"
    assert replay.next_state == FlowState.LOCATION_OTP_CHALLENGE
    assert replay.hint == NextAction.RESEND_CODE


@pytest.mark.asyncio
async def test_denylisted_country_always_requires_location_code(
    orchestrator, notifier, account_id, password
):
    await complete_signup(orchestrator, notifier, password, ip="198.51.100.66")
    token = await start_login(orchestrator, password)

    await orchestrator.check_device(token, "198.51.100.66", signals())
    result = await orchestrator.check_location(token, "198.51.100.66")

    # Moscow is already in the history, but Russia is denylisted
    assert result.status == "challenge_required"
    assert result.detail["risk_score"] == 90


# ── Device step ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_new_device_on_login_asks_for_device_code(orchestrator, notifier, account_id, password):
    await complete_signup(orchestrator, notifier, password)
    token = await start_login(orchestrator, password)

    result = await orchestrator.check_device(
        token, "198.51.100.99", signals("persist-laptop02", platform="Win32")
    )

    assert result.status == "challenge_required"
    assert result.detail["purpose"] == "device"
    assert notifier.sent[-1]["subject"] == "Confirm this new device"


@pytest.mark.asyncio
async def test_strict_policy_demands_code_for_token_only_match(
    sql_ledger, directory, notifier, geolocation, clock, rng, account_id, password
):
    strict = VerificationOrchestrator(
        sql_ledger, directory, notifier, geolocation, clock, rng,
        device_policy=DeviceMatchPolicy(min_matching_components=2),
    )
    await complete_signup(strict, notifier, password)
    token = await start_login(strict, password)

    # Same token, different network and hardware: one component only
    result = await strict.check_device(token, "198.51.100.99", signals(platform="Win32"))
    assert result.status == "challenge_required"


@pytest.mark.asyncio
async def test_legacy_device_upgraded_while_window_open(
    sql_ledger, directory, notifier, geolocation, clock, rng, account_id, password
):
    window = DeviceMatchPolicy(legacy_migration_until=clock.now() + timedelta(days=30))
    orchestrator = VerificationOrchestrator(
        sql_ledger, directory, notifier, geolocation, clock, rng, device_policy=window
    )
    done = await complete_signup(orchestrator, notifier, password)
    assert done.next_state == FlowState.COMPLETE

    # Rewrite history: the last completed sign-in carried a legacy id
    legacy = "6f1c2b9e-3d4a-4e5f-9a8b-7c6d5e4f3a2b"
    previous = sql_ledger.latest_event(account_id, ("signup_completed",))
    sql_ledger.append_event(
        previous.model_copy(update={"id": uuid.uuid4(), "device_id": legacy})
    )

    token = await start_login(orchestrator, password)
    result = await orchestrator.check_device(token, HOME_IP, signals())
    assert result.status == "advance"
    decided = sql_ledger.latest_flow_event(decode_flow_token(token)[1])
    assert decided.stored_device_id == legacy
    assert decided.resolved_device_id.startswith("hybrid-")

    closed = VerificationOrchestrator(
        sql_ledger, directory, notifier, geolocation, clock, rng,
        device_policy=replace(window, legacy_migration_until=None),
    )
    token = await start_login(closed, password)
    result = await closed.check_device(token, HOME_IP, signals())
    assert result.status == "challenge_required"


@pytest.mark.asyncio
async def test_trusted_device_is_recognised(orchestrator, notifier, clock, account_id, password):
    await complete_signup(orchestrator, notifier, password)
    tablet = device_identity.derive_hybrid("198.51.100.99", signals("persist-tablet01", "iPad").hardware, "persist-tablet01")
    trusted_devices.trust_device(
        orchestrator.ledger, account_id, tablet, LocationSample.unknown("198.51.100.99", clock.now()), clock
    )

    token = await start_login(orchestrator, password)
    result = await orchestrator.check_device(token, "198.51.100.99", signals("persist-tablet01", "iPad"))
    assert result.status == "advance"

    event = orchestrator.ledger.latest_flow_event(decode_flow_token(token)[1])
    assert event.matched_by == "trusted_device"


# ── Location step ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_browser_coordinates_near_signup_skip_location_code(
    orchestrator, notifier, account_id, password
):
    started = await orchestrator.begin_credential_check(EMAIL, password, FlowKind.SIGNUP)
    token = started.detail["flow_token"]
    await orchestrator.check_device(token, HOME_IP, signals())
    await orchestrator.verify_otp(token, notifier.last_code(EMAIL))
    await orchestrator.check_location(token, HOME_IP, Coordinates(latitude=52.52, longitude=13.405))
    await orchestrator.verify_location_otp(token, notifier.last_code(EMAIL))

    # New country by IP (risk 60) but browser location is 27 km from signup
    token = await start_login(orchestrator, password)
    await orchestrator.check_device(token, "198.51.100.99", signals())
    result = await orchestrator.check_location(
        token, "198.51.100.99", Coordinates(latitude=52.3906, longitude=13.0645)
    )
    assert result.next_state == FlowState.COMPLETE


@pytest.mark.asyncio
async def test_browser_coordinates_far_from_signup_require_code(
    orchestrator, notifier, account_id, password
):
    started = await orchestrator.begin_credential_check(EMAIL, password, FlowKind.SIGNUP)
    token = started.detail["flow_token"]
    await orchestrator.check_device(token, HOME_IP, signals())
    await orchestrator.verify_otp(token, notifier.last_code(EMAIL))
    await orchestrator.check_location(token, HOME_IP, Coordinates(latitude=52.52, longitude=13.405))
    await orchestrator.verify_location_otp(token, notifier.last_code(EMAIL))

    # Same city by IP (risk 10) but the browser reports Munich
    token = await start_login(orchestrator, password)
    await orchestrator.check_device(token, HOME_IP, signals())
    result = await orchestrator.check_location(
        token, HOME_IP, Coordinates(latitude=48.1351, longitude=11.582)
    )
    assert result.status == "challenge_required"


@pytest.mark.asyncio
async def test_geolocation_outage_degrades_to_unknown(
    orchestrator, notifier, geolocation, account_id, password
):
    await complete_signup(orchestrator, notifier, password)
    token = await start_login(orchestrator, password)
    await orchestrator.check_device(token, HOME_IP, signals())

    geolocation.fail = True
    result = await orchestrator.check_location(token, HOME_IP)

    assert result.status == "challenge_required"
    assert result.detail["risk_score"] == 90


# ── Failures and ordering ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_wrong_password_aborts_without_detail(orchestrator, account_id):
    result = await orchestrator.begin_credential_check(EMAIL, "wrong-password", FlowKind.LOGIN)

    assert result.status == "failed"
    assert result.next_state == FlowState.ABORTED
    assert result.error == ErrorKind.CREDENTIAL_FAILURE
    assert result.hint == NextAction.RESTART
    assert result.detail == {}


@pytest.mark.asyncio
async def test_unknown_email_looks_like_wrong_password(orchestrator, account_id):
    unknown = await orchestrator.begin_credential_check("nobody@example.com", "whatever-pass", FlowKind.LOGIN)
    wrong = await orchestrator.begin_credential_check(EMAIL, "wrong-password", FlowKind.LOGIN)

    assert unknown == wrong


@pytest.mark.asyncio
async def test_wrong_code_keeps_challenge_open(orchestrator, notifier, account_id, password):
    started = await orchestrator.begin_credential_check(EMAIL, password, FlowKind.SIGNUP)
    token = started.detail["flow_token"]
    await orchestrator.check_device(token, HOME_IP, signals())

    code = notifier.last_code(EMAIL)
    wrong = "100000" if code != "100000" else "100001"
    result = await orchestrator.verify_otp(token, wrong)
    assert result.error == ErrorKind.CHALLENGE_EXPIRED_OR_WRONG
    assert result.next_state == FlowState.OTP_CHALLENGE
    assert result.hint == NextAction.RESEND_CODE

    assert (await orchestrator.verify_otp(token, code)).status == "advance"


@pytest.mark.asyncio
async def test_expired_code_then_resend(orchestrator, notifier, clock, account_id, password):
    started = await orchestrator.begin_credential_check(EMAIL, password, FlowKind.SIGNUP)
    token = started.detail["flow_token"]
    await orchestrator.check_device(token, HOME_IP, signals())
    stale = notifier.last_code(EMAIL)

    clock.advance(minutes=11)
    assert (await orchestrator.verify_otp(token, stale)).error == ErrorKind.CHALLENGE_EXPIRED_OR_WRONG

    resent = await orchestrator.challenge_otp(token)
    assert resent.status == "challenge_required"
    assert resent.detail["resent"] is True
    assert (await orchestrator.verify_otp(token, notifier.last_code(EMAIL))).status == "advance"


@pytest.mark.asyncio
async def test_notifier_failure_keeps_challenge_and_offers_resend(
    orchestrator, notifier, account_id, password
):
    started = await orchestrator.begin_credential_check(EMAIL, password, FlowKind.SIGNUP)
    token = started.detail["flow_token"]

    notifier.fail = True
    result = await orchestrator.check_device(token, HOME_IP, signals())
    assert result.status == "failed"
    assert result.next_state == FlowState.OTP_CHALLENGE
    assert result.error == ErrorKind.UPSTREAM_UNAVAILABLE
    assert result.hint == NextAction.RESEND_CODE

    notifier.fail = False
    await orchestrator.challenge_otp(token)
    assert (await orchestrator.verify_otp(token, notifier.last_code(EMAIL))).status == "advance"


@pytest.mark.asyncio
async def test_out_of_order_step_is_rejected(orchestrator, account_id, password):
    token = await start_login(orchestrator, password)

    result = await orchestrator.verify_location_otp(token, "123456")
    assert result.status == "failed"
    assert result.error == ErrorKind.INPUT_INVALID
    assert result.next_state == FlowState.DEVICE_CHECK

    result = await orchestrator.check_location(token, HOME_IP)
    assert result.error == ErrorKind.INPUT_INVALID


@pytest.mark.asyncio
async def test_repeated_device_step_does_not_reissue(orchestrator, notifier, account_id, password):
    started = await orchestrator.begin_credential_check(EMAIL, password, FlowKind.SIGNUP)
    token = started.detail["flow_token"]

    await orchestrator.check_device(token, HOME_IP, signals())
    sent = len(notifier.sent)
    again = await orchestrator.check_device(token, HOME_IP, signals())

    assert again.status == "challenge_required"
    assert len(notifier.sent) == sent


@pytest.mark.asyncio
async def test_forged_flow_token_is_rejected(orchestrator, account_id):
    result = await orchestrator.check_device("not-a-token", HOME_IP, signals())

    assert result.error == ErrorKind.INPUT_INVALID
    assert result.hint == NextAction.RESTART


@pytest.mark.asyncio
async def test_cancel_aborts_flow(orchestrator, account_id, password):
    token = await start_login(orchestrator, password)

    cancelled = await orchestrator.cancel(token)
    assert cancelled.next_state == FlowState.ABORTED

    after = await orchestrator.check_device(token, HOME_IP, signals())
    assert after.error == ErrorKind.INPUT_INVALID
    assert after.hint == NextAction.RESTART


@pytest.mark.asyncio
async def test_ledger_failure_becomes_try_again_later(
    memory_ledger, directory, notifier, geolocation, clock, account_id, password
):
    class BrokenLedger(type(memory_ledger)):
        def append_event(self, event):
            raise LedgerError("disk full")

    orchestrator = VerificationOrchestrator(BrokenLedger(), directory, notifier, geolocation, clock)
    result = await orchestrator.begin_credential_check(EMAIL, password, FlowKind.LOGIN)

    assert result.status == "failed"
    assert result.error == ErrorKind.UPSTREAM_UNAVAILABLE
    assert result.hint == NextAction.TRY_AGAIN_LATER
    assert result.detail == {}


def fail_location_sample_once(monkeypatch, ledger):
    original = ledger.put_location_sample
    calls = []

    def flaky(user_id, sample):
        calls.append(user_id)
        if len(calls) == 1:
            raise LedgerError("connection reset")
        return original(user_id, sample)

    monkeypatch.setattr(ledger, "put_location_sample", flaky)
    return calls


@pytest.mark.asyncio
async def test_failed_completion_can_be_retried(
    orchestrator, notifier, monkeypatch, account_id, password
):
    await complete_signup(orchestrator, notifier, password)
    token = await start_login(orchestrator, password)
    await orchestrator.check_device(token, CAFE_IP, signals())
    fail_location_sample_once(monkeypatch, orchestrator.ledger)

    first = await orchestrator.check_location(token, CAFE_IP)
    assert first.status == "failed"
    assert first.error == ErrorKind.UPSTREAM_UNAVAILABLE
    assert first.hint == NextAction.TRY_AGAIN_LATER
    flow_id = decode_flow_token(token)[1]
    assert orchestrator.ledger.latest_flow_event(flow_id).state == FlowState.LOCATION_CHECK

    retried = await orchestrator.check_location(token, CAFE_IP)
    assert retried.status == "advance"
    assert retried.next_state == FlowState.COMPLETE
    assert retried.detail["access_token"]


@pytest.mark.asyncio
async def test_failed_completion_after_location_code_needs_no_second_code(
    orchestrator, notifier, monkeypatch, account_id, password
):
    started = await orchestrator.begin_credential_check(EMAIL, password, FlowKind.SIGNUP)
    token = started.detail["flow_token"]
    await orchestrator.check_device(token, HOME_IP, signals())
    await orchestrator.verify_otp(token, notifier.last_code(EMAIL))
    await orchestrator.check_location(token, HOME_IP)
    code = notifier.last_code(EMAIL)
    fail_location_sample_once(monkeypatch, orchestrator.ledger)

    first = await orchestrator.verify_location_otp(token, code)
    assert first.error == ErrorKind.UPSTREAM_UNAVAILABLE

    retried = await orchestrator.verify_location_otp(token, code)
    assert retried.next_state == FlowState.COMPLETE
    assert retried.detail["access_token"]
    assert retried.detail["security"]["score"] == 100


@pytest.mark.asyncio
async def test_repeated_step_after_completion_returns_the_session_again(
    orchestrator, notifier, account_id, password
):
    await complete_signup(orchestrator, notifier, password)
    token = await start_login(orchestrator, password)
    await orchestrator.check_device(token, CAFE_IP, signals())
    done = await orchestrator.check_location(token, CAFE_IP)
    assert done.next_state == FlowState.COMPLETE

    again = await orchestrator.check_location(token, CAFE_IP)
    assert again.status == "advance"
    assert again.next_state == FlowState.COMPLETE
    assert again.detail["access_token"]
    assert again.detail["device_id"] == done.detail["device_id"]

    via_code = await orchestrator.verify_location_otp(token, "123456")
    assert via_code.next_state == FlowState.COMPLETE
    assert via_code.detail["access_token"]

    completed = [
        e for e in orchestrator.ledger.flow_events(decode_flow_token(token)[1])
        if e.state == FlowState.COMPLETE
    ]
    assert len(completed) == 1


# ── Security questions ────────────────────────────────────────────────────────

QUESTIONS = [
    ("Name of your first pet?", "Biscuit"),
    ("City where your parents met?", "New  Orleans"),
    ("Your childhood street?", "Elm Road"),
]


@pytest.mark.asyncio
async def test_security_questions_add_verification_to_login(
    orchestrator, notifier, directory, account_id, password
):
    directory.set_security_questions(account_id, QUESTIONS)
    await complete_signup(orchestrator, notifier, password)
    token = await start_login(orchestrator, password)
    await orchestrator.check_device(token, CAFE_IP, signals())

    asked = await orchestrator.security_questions(token)
    assert asked.status == "challenge_required"
    assert asked.next_state == FlowState.LOCATION_CHECK
    assert asked.detail["questions"] == [q for q, _ in QUESTIONS]
    assert "Biscuit" not in str(asked.detail)

    wrong = await orchestrator.verify_security_answers(token, ["Rex", "Paris", "Elm Road"])
    assert wrong.status == "failed"
    assert wrong.error == ErrorKind.CHALLENGE_EXPIRED_OR_WRONG
    assert wrong.hint == NextAction.RETRY

    # Two of three, case and spacing ignored
    passed = await orchestrator.verify_security_answers(token, [" biscuit ", "new orleans", "Oak Lane"])
    assert passed.status == "advance"
    assert passed.next_state == FlowState.LOCATION_CHECK
    assert passed.detail["security_questions_verified"] is True

    done = await orchestrator.check_location(token, CAFE_IP)
    assert done.next_state == FlowState.COMPLETE
    assert done.detail["security"]["score"] == 100

    latest = orchestrator.ledger.latest_event(account_id, ("login_completed",))
    assert latest.factors.additional_verification is True


@pytest.mark.asyncio
async def test_security_answers_must_match_question_count(
    orchestrator, notifier, directory, account_id, password
):
    directory.set_security_questions(account_id, QUESTIONS)
    await complete_signup(orchestrator, notifier, password)
    token = await start_login(orchestrator, password)
    await orchestrator.check_device(token, CAFE_IP, signals())

    result = await orchestrator.verify_security_answers(token, ["Biscuit"])
    assert result.error == ErrorKind.INPUT_INVALID
    assert result.hint == NextAction.RETRY


@pytest.mark.asyncio
async def test_security_questions_without_any_set(orchestrator, notifier, account_id, password):
    await complete_signup(orchestrator, notifier, password)
    token = await start_login(orchestrator, password)
    await orchestrator.check_device(token, CAFE_IP, signals())

    asked = await orchestrator.security_questions(token)
    assert asked.status == "failed"
    assert asked.error == ErrorKind.INPUT_INVALID
    assert asked.detail["questions"] == []

    answered = await orchestrator.verify_security_answers(token, ["anything"])
    assert answered.error == ErrorKind.INPUT_INVALID


@pytest.mark.asyncio
async def test_security_questions_before_device_step_are_out_of_order(
    orchestrator, directory, account_id, password
):
    directory.set_security_questions(account_id, QUESTIONS)
    token = await start_login(orchestrator, password)

    result = await orchestrator.verify_security_answers(token, ["Biscuit", "New Orleans", "Elm Road"])
    assert result.status == "failed"
    assert result.error == ErrorKind.INPUT_INVALID
    assert result.next_state == FlowState.DEVICE_CHECK
