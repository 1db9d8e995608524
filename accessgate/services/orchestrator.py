"""
Verification orchestrator: the signup/login state machine.

  CREDENTIALS_PENDING → DEVICE_CHECK → (OTP_CHALLENGE)? → LOCATION_CHECK
                      → (LOCATION_OTP_CHALLENGE)? → COMPLETE
  terminal: COMPLETE, ABORTED

While in LOCATION_CHECK the user may also answer their security questions,
which counts as additional verification on completion.

Nothing is held in memory between calls. The flow token only names the flow
(user id + flow id); the current state is the state recorded on the newest
ledger event for that flow. Any replica can serve any step, and a client
cannot skip a step by editing what it sends.

Every step returns a StepResult. Expected domain outcomes (wrong code, new
device, risky location) are results, not exceptions. Upstream and ledger
failures are caught here and turned into a generic try-again-later result.
"""
import functools
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from jwt.exceptions import InvalidTokenError

from accessgate.config import settings
from accessgate.core.clock import Clock, RandomSource, system_clock, system_random
from accessgate.core.exceptions import LedgerError, UpstreamUnavailableError
from accessgate.core.security import create_access_token, create_flow_token, decode_flow_token
from accessgate.schemas.ledger import (
    COMPLETED_EVENT_TYPES,
    TERMINAL_STATES,
    CredentialsVerified,
    DeviceVerification,
    FlowAborted,
    FlowKind,
    FlowState,
    LocationSample,
    LocationVerification,
    LoginCompleted,
    OtpPurpose,
    SecurityFactorSet,
    SecurityQuestionsVerified,
    SignupCompleted,
)
from accessgate.schemas.verification import (
    Coordinates,
    DeviceSignals,
    ErrorKind,
    NextAction,
    StepResult,
)
from accessgate.services import device_identity, location_risk, otp_service, security_score
from accessgate.services.account_directory import AccountDirectory
from accessgate.services.email_service import Notifier, otp_message
from accessgate.services.ledger import Ledger

logger = logging.getLogger(__name__)


@dataclass
class FlowContext:
    user_id: uuid.UUID
    flow_id: uuid.UUID
    kind: FlowKind
    email: str
    state: FlowState
    events: list

    def last(self, event_cls):
        for event in reversed(self.events):
            if isinstance(event, event_cls):
                return event
        return None


def _guarded(fallback_state: FlowState):
    """
    Upstream/ledger failures become a try-again-later result; internal detail
    only goes to the log.
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            try:
                return await func(self, *args, **kwargs)
            except (UpstreamUnavailableError, LedgerError) as exc:
                logger.error(f"{func.__name__} failed: {exc}")
                return StepResult.failed(
                    fallback_state,
                    ErrorKind.UPSTREAM_UNAVAILABLE,
                    NextAction.TRY_AGAIN_LATER,
                )
        return wrapper
    return decorator


def _invalid_flow() -> StepResult:
    return StepResult.failed(
        FlowState.CREDENTIALS_PENDING,
        ErrorKind.INPUT_INVALID,
        NextAction.RESTART,
    )


def _out_of_order(state: FlowState) -> StepResult:
    hint = NextAction.RESTART if state in TERMINAL_STATES else NextAction.RETRY
    return StepResult.failed(state, ErrorKind.INPUT_INVALID, hint)


def _stale_code(state: FlowState) -> StepResult:
    """The code was already consumed or superseded."""
    if state in TERMINAL_STATES:
        hint = NextAction.RESTART
    elif state in (FlowState.OTP_CHALLENGE, FlowState.LOCATION_OTP_CHALLENGE):
        hint = NextAction.RESEND_CODE
    else:
        # Already past the code; carry on with the current step
        hint = NextAction.RETRY
    return StepResult.failed(state, ErrorKind.CHALLENGE_EXPIRED_OR_WRONG, hint)


class VerificationOrchestrator:
    def __init__(
        self,
        ledger: Ledger,
        directory: AccountDirectory,
        notifier: Notifier,
        geolocation: location_risk.GeolocationProvider,
        clock: Clock = system_clock,
        rng: RandomSource = system_random,
        device_policy: Optional[device_identity.DeviceMatchPolicy] = None,
    ):
        self.ledger = ledger
        self.directory = directory
        self.notifier = notifier
        self.geolocation = geolocation
        self.clock = clock
        self.rng = rng
        self.device_policy = device_policy

    # ── Flow reconstruction ───────────────────────────────────────────────────

    def _load(self, flow_token: str) -> Optional[FlowContext]:
        try:
            user_id, flow_id = decode_flow_token(flow_token)
            user_id = uuid.UUID(user_id)
        except (InvalidTokenError, ValueError):
            return None

        events = self.ledger.flow_events(flow_id)
        if not events:
            return None
        opening = events[0]
        if not isinstance(opening, CredentialsVerified) or opening.user_id != user_id:
            return None

        return FlowContext(
            user_id=user_id,
            flow_id=flow_id,
            kind=opening.kind,
            email=opening.email,
            state=events[-1].state,
            events=events,
        )

    def _policy(self, now: datetime) -> device_identity.DeviceMatchPolicy:
        if self.device_policy is not None:
            return replace(self.device_policy, now=now)
        return device_identity.policy_from_settings(now)

    @staticmethod
    def _device_purpose(kind: FlowKind) -> OtpPurpose:
        # A signup has no device on record; its code doubles as email ownership proof
        return OtpPurpose.EMAIL if kind == FlowKind.SIGNUP else OtpPurpose.DEVICE

    async def _send_code(self, ctx: FlowContext, purpose: OtpPurpose, event=None) -> bool:
        """
        Issue a fresh code, record the state change (if any) and hand the code
        to the Notifier. The challenge is written before the event so a
        recorded challenge state always has a code behind it. The challenge
        stays even when delivery fails; False tells the caller to offer a resend.
        """
        code = otp_service.issue(self.ledger, purpose, ctx.email, self.clock, self.rng)
        if event is not None:
            self.ledger.append_event(event)
        subject, body = otp_message(purpose, code)
        try:
            message_id = await self.notifier.send(ctx.email, subject, body)
        except UpstreamUnavailableError as exc:
            logger.warning(f"Flow {ctx.flow_id}: {purpose.value} code not delivered ({exc.service})")
            return False
        logger.info(f"Flow {ctx.flow_id}: {purpose.value} code sent, message {message_id}")
        return True

    def _challenge_result(self, state: FlowState, purpose: OtpPurpose, delivered: bool, **detail) -> StepResult:
        if delivered:
            return StepResult.challenge(state, purpose=purpose.value, **detail)
        return StepResult.failed(
            state,
            ErrorKind.UPSTREAM_UNAVAILABLE,
            NextAction.RESEND_CODE,
            purpose=purpose.value,
            **detail,
        )

    # ── CREDENTIALS_PENDING ───────────────────────────────────────────────────

    @_guarded(FlowState.ABORTED)
    async def begin_credential_check(
        self, email: str, password: str, kind: FlowKind = FlowKind.LOGIN
    ) -> StepResult:
        email = otp_service.normalize_subject(email)
        if "@" not in email or not password:
            return StepResult.failed(
                FlowState.CREDENTIALS_PENDING,
                ErrorKind.INPUT_INVALID,
                NextAction.RETRY,
            )

        user_id = self.directory.verify_credentials(email, password)
        if user_id is None:
            # No detail: the caller must not learn whether the email exists
            logger.info(f"Credential check failed for a {kind.value} attempt")
            return StepResult.failed(
                FlowState.ABORTED,
                ErrorKind.CREDENTIAL_FAILURE,
                NextAction.RESTART,
            )

        now = self.clock.now()
        flow_id = uuid.uuid4()
        self.ledger.append_event(
            CredentialsVerified(
                user_id=user_id,
                flow_id=flow_id,
                state=FlowState.DEVICE_CHECK,
                created_at=now,
                kind=kind,
                email=email,
            )
        )
        logger.info(f"Flow {flow_id} started ({kind.value}) for user {user_id}")
        return StepResult.advance(
            FlowState.DEVICE_CHECK,
            flow_token=create_flow_token(str(user_id), flow_id, now),
        )

    # ── DEVICE_CHECK ──────────────────────────────────────────────────────────

    def _recognize_device(self, ctx: FlowContext, observed, now: datetime):
        """(matched_by, stored_raw_id) for the first stored device that matches, else (None, stored)."""
        policy = self._policy(now)

        previous = self.ledger.latest_event(ctx.user_id, COMPLETED_EVENT_TYPES)
        stored_raw = previous.device_id if previous is not None else None
        if stored_raw and device_identity.same_device(device_identity.parse(stored_raw), observed, policy):
            return "previous_login", stored_raw

        for trusted in self.ledger.active_trusted_devices(ctx.user_id, now):
            if device_identity.same_device(device_identity.parse(trusted.device_id), observed, policy):
                return "trusted_device", trusted.device_id

        return None, stored_raw

    @_guarded(FlowState.DEVICE_CHECK)
    async def check_device(self, flow_token: str, client_ip: str, device: DeviceSignals) -> StepResult:
        ctx = self._load(flow_token)
        if ctx is None:
            return _invalid_flow()

        if ctx.state == FlowState.OTP_CHALLENGE:
            # Already decided; the open challenge stands
            return StepResult.challenge(
                FlowState.OTP_CHALLENGE, purpose=self._device_purpose(ctx.kind).value
            )
        if ctx.state in (FlowState.LOCATION_CHECK, FlowState.LOCATION_OTP_CHALLENGE):
            return StepResult.advance(ctx.state)
        if ctx.state != FlowState.DEVICE_CHECK:
            return _out_of_order(ctx.state)

        now = self.clock.now()
        observed = device_identity.derive_hybrid(client_ip, device.hardware, device.persistent_token)
        matched_by, stored_raw = self._recognize_device(ctx, observed, now)

        if matched_by:
            resolved = device_identity.migrate(stored_raw, observed.raw_id)
            self.ledger.append_event(
                DeviceVerification(
                    user_id=ctx.user_id,
                    flow_id=ctx.flow_id,
                    state=FlowState.LOCATION_CHECK,
                    created_at=now,
                    kind=ctx.kind,
                    email=ctx.email,
                    observed_device_id=observed.raw_id,
                    stored_device_id=stored_raw,
                    matched=True,
                    matched_by=matched_by,
                    resolved_device_id=resolved,
                )
            )
            logger.info(f"Flow {ctx.flow_id}: device recognised via {matched_by}")
            return StepResult.advance(FlowState.LOCATION_CHECK, device_recognized=True)

        purpose = self._device_purpose(ctx.kind)
        delivered = await self._send_code(
            ctx,
            purpose,
            DeviceVerification(
                user_id=ctx.user_id,
                flow_id=ctx.flow_id,
                state=FlowState.OTP_CHALLENGE,
                created_at=now,
                kind=ctx.kind,
                email=ctx.email,
                observed_device_id=observed.raw_id,
                stored_device_id=stored_raw,
                matched=False,
                resolved_device_id=observed.raw_id,
            ),
        )
        return self._challenge_result(FlowState.OTP_CHALLENGE, purpose, delivered, device_recognized=False)

    # ── OTP_CHALLENGE / LOCATION_OTP_CHALLENGE ────────────────────────────────

    @_guarded(FlowState.OTP_CHALLENGE)
    async def challenge_otp(self, flow_token: str) -> StepResult:
        """Resend: replaces the open challenge of whichever OTP state the flow is in."""
        ctx = self._load(flow_token)
        if ctx is None:
            return _invalid_flow()

        if ctx.state == FlowState.OTP_CHALLENGE:
            purpose = self._device_purpose(ctx.kind)
        elif ctx.state == FlowState.LOCATION_OTP_CHALLENGE:
            purpose = OtpPurpose.LOCATION
        else:
            return _out_of_order(ctx.state)

        delivered = await self._send_code(ctx, purpose)
        return self._challenge_result(ctx.state, purpose, delivered, resent=True)

    @_guarded(FlowState.OTP_CHALLENGE)
    async def verify_otp(self, flow_token: str, code: str) -> StepResult:
        ctx = self._load(flow_token)
        if ctx is None:
            return _invalid_flow()

        if ctx.state in (FlowState.LOCATION_CHECK, FlowState.LOCATION_OTP_CHALLENGE, FlowState.COMPLETE):
            # The device challenge was already consumed
            return _stale_code(ctx.state)
        if ctx.state != FlowState.OTP_CHALLENGE:
            return _out_of_order(ctx.state)

        purpose = self._device_purpose(ctx.kind)
        if not otp_service.validate(self.ledger, purpose, ctx.email, code, self.clock):
            return StepResult.failed(
                FlowState.OTP_CHALLENGE,
                ErrorKind.CHALLENGE_EXPIRED_OR_WRONG,
                NextAction.RESEND_CODE,
            )

        decided = ctx.last(DeviceVerification)
        observed_raw = decided.observed_device_id if decided else device_identity.SENTINEL
        self.ledger.append_event(
            DeviceVerification(
                user_id=ctx.user_id,
                flow_id=ctx.flow_id,
                state=FlowState.LOCATION_CHECK,
                created_at=self.clock.now(),
                kind=ctx.kind,
                email=ctx.email,
                observed_device_id=observed_raw,
                stored_device_id=decided.stored_device_id if decided else None,
                matched=False,
                otp_verified=True,
                resolved_device_id=observed_raw,
            )
        )
        logger.info(f"Flow {ctx.flow_id}: device verified by code")
        return StepResult.advance(FlowState.LOCATION_CHECK, device_verified=True)

    # ── LOCATION_CHECK ────────────────────────────────────────────────────────

    def _signup_sample(self, user_id: uuid.UUID) -> Optional[LocationSample]:
        signup = self.ledger.latest_event(user_id, ("signup_completed",))
        return signup.location if signup is not None else None

    def _location_decision(self, ctx: FlowContext, sample: LocationSample):
        """(risk_score, verification_required, distance_km)."""
        history = self.ledger.location_history(ctx.user_id, settings.location_history_limit)
        risk = location_risk.score_risk(sample, history)

        if risk == location_risk.RISK_DENYLISTED_COUNTRY:
            return risk, True, None

        reference = self._signup_sample(ctx.user_id)
        if reference is not None:
            within = location_risk.within_radius(sample, reference)
            if within is not None:
                distance = round(location_risk.haversine_distance_km(sample, reference), 2)
                return risk, not within, distance

        return risk, location_risk.verification_required(risk), None

    @_guarded(FlowState.LOCATION_CHECK)
    async def check_location(
        self,
        flow_token: str,
        client_ip: str,
        coordinates: Optional[Coordinates] = None,
    ) -> StepResult:
        ctx = self._load(flow_token)
        if ctx is None:
            return _invalid_flow()

        if ctx.state == FlowState.LOCATION_OTP_CHALLENGE:
            return StepResult.challenge(FlowState.LOCATION_OTP_CHALLENGE, purpose=OtpPurpose.LOCATION.value)
        if ctx.state == FlowState.COMPLETE:
            return self._replay_completion(ctx)
        if ctx.state != FlowState.LOCATION_CHECK:
            return _out_of_order(ctx.state)

        sample = await location_risk.resolve(self.geolocation, client_ip, self.clock)
        if coordinates is not None:
            sample = sample.model_copy(
                update={"latitude": coordinates.latitude, "longitude": coordinates.longitude}
            )

        risk, required, distance = self._location_decision(ctx, sample)
        logger.info(
            f"Flow {ctx.flow_id}: location {sample.city}, {sample.country} risk={risk} "
            f"verification_required={required}"
        )

        if not required:
            return self._complete(ctx, sample, risk, location_otp_passed=False)

        delivered = await self._send_code(
            ctx,
            OtpPurpose.LOCATION,
            LocationVerification(
                user_id=ctx.user_id,
                flow_id=ctx.flow_id,
                state=FlowState.LOCATION_OTP_CHALLENGE,
                created_at=self.clock.now(),
                kind=ctx.kind,
                email=ctx.email,
                location=sample,
                risk_score=risk,
                verification_required=True,
                distance_km=distance,
            ),
        )
        return self._challenge_result(
            FlowState.LOCATION_OTP_CHALLENGE, OtpPurpose.LOCATION, delivered, risk_score=risk
        )

    @_guarded(FlowState.LOCATION_OTP_CHALLENGE)
    async def verify_location_otp(self, flow_token: str, code: str) -> StepResult:
        ctx = self._load(flow_token)
        if ctx is None:
            return _invalid_flow()

        if ctx.state == FlowState.COMPLETE:
            return self._replay_completion(ctx)
        if ctx.state != FlowState.LOCATION_OTP_CHALLENGE:
            return _out_of_order(ctx.state)

        decided = ctx.last(LocationVerification)
        # A passed code whose completion failed leaves an otp_verified marker;
        # the retry completes without the (already consumed) code
        if not (decided and decided.otp_verified):
            if not otp_service.validate(self.ledger, OtpPurpose.LOCATION, ctx.email, code, self.clock):
                return StepResult.failed(
                    FlowState.LOCATION_OTP_CHALLENGE,
                    ErrorKind.CHALLENGE_EXPIRED_OR_WRONG,
                    NextAction.RESEND_CODE,
                )
            if decided:
                decided = decided.model_copy(
                    update={"id": uuid.uuid4(), "otp_verified": True, "created_at": self.clock.now()}
                )
                self.ledger.append_event(decided)

        sample = decided.location if decided and decided.location else None
        if sample is None:
            sample = LocationSample.unknown("unknown", self.clock.now())
        risk = decided.risk_score if decided else location_risk.RISK_NEW_USER
        return self._complete(ctx, sample, risk, location_otp_passed=True)

    # ── Security questions (while in LOCATION_CHECK) ──────────────────────────

    @_guarded(FlowState.LOCATION_CHECK)
    async def security_questions(self, flow_token: str) -> StepResult:
        """The user's questions, never the answers."""
        ctx = self._load(flow_token)
        if ctx is None:
            return _invalid_flow()
        if ctx.state != FlowState.LOCATION_CHECK:
            return _out_of_order(ctx.state)

        questions = self.directory.security_questions(ctx.user_id)
        if not questions:
            return StepResult.failed(ctx.state, ErrorKind.INPUT_INVALID, NextAction.RETRY, questions=[])
        return StepResult.challenge(ctx.state, questions=questions)

    @_guarded(FlowState.LOCATION_CHECK)
    async def verify_security_answers(self, flow_token: str, answers: list[str]) -> StepResult:
        """
        Optional extra factor once the device is settled. At least half the
        answers (rounded up) must be right; passing counts as additional
        verification when the flow completes.
        """
        ctx = self._load(flow_token)
        if ctx is None:
            return _invalid_flow()
        if ctx.state != FlowState.LOCATION_CHECK:
            return _out_of_order(ctx.state)
        if ctx.last(SecurityQuestionsVerified) is not None:
            return StepResult.advance(ctx.state, security_questions_verified=True)

        asked = len(self.directory.security_questions(ctx.user_id))
        if asked == 0 or len(answers) != asked:
            return StepResult.failed(ctx.state, ErrorKind.INPUT_INVALID, NextAction.RETRY)

        correct = self.directory.check_security_answers(ctx.user_id, answers)
        if correct < (asked + 1) // 2:
            logger.info(f"Flow {ctx.flow_id}: security answers rejected ({correct}/{asked})")
            return StepResult.failed(ctx.state, ErrorKind.CHALLENGE_EXPIRED_OR_WRONG, NextAction.RETRY)

        self.ledger.append_event(
            SecurityQuestionsVerified(
                user_id=ctx.user_id,
                flow_id=ctx.flow_id,
                state=FlowState.LOCATION_CHECK,
                created_at=self.clock.now(),
                kind=ctx.kind,
                email=ctx.email,
                asked=asked,
                correct=correct,
            )
        )
        logger.info(f"Flow {ctx.flow_id}: security questions passed ({correct}/{asked})")
        return StepResult.advance(ctx.state, security_questions_verified=True)

    # ── COMPLETE / ABORTED ────────────────────────────────────────────────────

    def _completion_result(self, ctx: FlowContext, completed) -> StepResult:
        return StepResult.advance(
            FlowState.COMPLETE,
            access_token=create_access_token(str(ctx.user_id), self.clock.now()),
            token_type="bearer",
            device_id=completed.device_id,
            security=security_score.score(completed.factors).model_dump(),
            profile=self.directory.get_profile(ctx.user_id),
        )

    def _replay_completion(self, ctx: FlowContext) -> StepResult:
        """A completed flow answers its last step again with a fresh access token."""
        completed = ctx.last((SignupCompleted, LoginCompleted))
        if completed is None:
            return _out_of_order(ctx.state)
        return self._completion_result(ctx, completed)

    def _complete(
        self,
        ctx: FlowContext,
        sample: LocationSample,
        risk: int,
        location_otp_passed: bool,
    ) -> StepResult:
        now = self.clock.now()
        device_event = ctx.last(DeviceVerification)
        device_matched = bool(device_event and device_event.matched)
        device_otp_passed = bool(device_event and device_event.otp_verified)
        answered_questions = ctx.last(SecurityQuestionsVerified) is not None
        resolved_device = device_event.resolved_device_id if device_event else device_identity.SENTINEL

        # Completion only happens once location is settled: either no
        # verification was needed or the location code was passed
        factors = SecurityFactorSet(
            valid_credentials=True,
            trusted_device=device_matched or device_otp_passed,
            recognized_location=True,
            additional_verification=device_otp_passed or location_otp_passed or answered_questions,
        )

        completed_cls = SignupCompleted if ctx.kind == FlowKind.SIGNUP else LoginCompleted
        completed = completed_cls(
            user_id=ctx.user_id,
            flow_id=ctx.flow_id,
            state=FlowState.COMPLETE,
            created_at=now,
            device_id=resolved_device,
            location=sample,
            factors=factors,
            security_score=security_score.score(factors).score,
            risk_score=risk,
        )

        # The COMPLETE event goes last: if anything before it fails the flow
        # stays in its current state and the step can be retried.
        self.ledger.put_location_sample(ctx.user_id, sample)
        result = self._completion_result(ctx, completed)
        self.ledger.append_event(completed)
        logger.info(f"Flow {ctx.flow_id} complete, security score {completed.security_score}")
        return result

    @_guarded(FlowState.ABORTED)
    async def cancel(self, flow_token: str, reason: str = "cancelled") -> StepResult:
        ctx = self._load(flow_token)
        if ctx is None:
            return _invalid_flow()

        if ctx.state == FlowState.ABORTED:
            return StepResult.advance(FlowState.ABORTED)
        if ctx.state == FlowState.COMPLETE:
            return _out_of_order(ctx.state)

        self.ledger.append_event(
            FlowAborted(
                user_id=ctx.user_id,
                flow_id=ctx.flow_id,
                state=FlowState.ABORTED,
                created_at=self.clock.now(),
                reason=reason,
            )
        )
        logger.info(f"Flow {ctx.flow_id} aborted: {reason}")
        return StepResult.advance(FlowState.ABORTED)
