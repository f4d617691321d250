"""
Admission gate for outbound WhatsApp messages.

Decides, per tenant-client, whether a message may be sent now. Three nested
fixed windows (minute / hour / day) cap throughput, a content screen rejects
obvious spam, and a suspicion score tightens the minute ceiling for clients
whose sends keep failing.

The gate never sleeps: an admitted result carries the human-like delay the
caller must wait (asynchronously) before handing the message to the
transport.
"""
import enum
import math
import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import structlog

from wahub.config import settings
from wahub.errors import ValidationError
from wahub.models.ban_alert import AlertType
from wahub.routes.metrics import track_admission, track_suspicion_alert
from wahub.sentry_config import capture_exception
from wahub.services.content_screen import ContentScreen
from wahub.services.keyed_store import KeyedStore

logger = structlog.get_logger()


MINUTE = 60.0
HOUR = 3600.0
DAY = 86400.0


class AdmissionReason(str, enum.Enum):
    """Machine-readable reason for a blocked admission."""
    CONTENT = "content"
    RATE_LIMIT_MINUTE = "rate_limit_minute"
    RATE_LIMIT_HOUR = "rate_limit_hour"
    RATE_LIMIT_DAY = "rate_limit_day"


class SendOutcome(str, enum.Enum):
    """Result of a transport send, fed back into suspicion scoring."""
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class RateLimits:
    """Ceilings for the three windows of one client."""
    per_minute: int
    per_hour: int
    per_day: int

    def __post_init__(self):
        for name in ("per_minute", "per_hour", "per_day"):
            if getattr(self, name) < 1:
                raise ValidationError(f"{name} must be at least 1")

    @classmethod
    def defaults(cls) -> "RateLimits":
        return cls(
            per_minute=settings.RATE_LIMIT_PER_MINUTE,
            per_hour=settings.RATE_LIMIT_PER_HOUR,
            per_day=settings.RATE_LIMIT_PER_DAY,
        )

    @classmethod
    def for_organisation(cls, organisation) -> "RateLimits":
        """Organisation overrides where set, global defaults otherwise."""
        base = cls.defaults()
        return cls(
            per_minute=organisation.rate_limit_per_minute or base.per_minute,
            per_hour=organisation.rate_limit_per_hour or base.per_hour,
            per_day=organisation.rate_limit_per_day or base.per_day,
        )


@dataclass(frozen=True)
class AdmissionPolicy:
    """Delay, warning and suspicion knobs of the gate."""
    delay_min_ms: int = 2000
    delay_max_ms: int = 5000
    long_pause_probability: float = 0.10
    long_pause_min_ms: int = 5000
    long_pause_max_ms: int = 15000
    warning_ratio: float = 0.8
    failure_window: int = 10
    failure_ratio: float = 0.3
    score_threshold: int = 3
    cooldown_seconds: float = 3600.0
    burst_interval_seconds: float = 1.0
    burst_length: int = 10

    @classmethod
    def from_settings(cls) -> "AdmissionPolicy":
        return cls(
            delay_min_ms=settings.ADMISSION_DELAY_MIN_MS,
            delay_max_ms=settings.ADMISSION_DELAY_MAX_MS,
            long_pause_probability=settings.ADMISSION_LONG_PAUSE_PROBABILITY,
            long_pause_min_ms=settings.ADMISSION_LONG_PAUSE_MIN_MS,
            long_pause_max_ms=settings.ADMISSION_LONG_PAUSE_MAX_MS,
            warning_ratio=settings.ADMISSION_WARNING_RATIO,
            failure_window=settings.SUSPICION_FAILURE_WINDOW,
            failure_ratio=settings.SUSPICION_FAILURE_RATIO,
            score_threshold=settings.SUSPICION_SCORE_THRESHOLD,
            cooldown_seconds=settings.SUSPICION_COOLDOWN_SECONDS,
            burst_interval_seconds=settings.BURST_INTERVAL_SECONDS,
            burst_length=settings.BURST_LENGTH,
        )


@dataclass
class RateWindow:
    """Fixed counting window anchored at window_start."""
    name: str
    duration: float
    max: int
    window_start: float
    count: int = 0

    def refresh(self, now: float) -> bool:
        """Reset the window once its duration has elapsed."""
        if now - self.window_start > self.duration:
            self.count = 0
            self.window_start = max(now, self.window_start)
            return True
        return False

    def retry_after(self, now: float) -> int:
        remaining = self.duration - (now - self.window_start)
        return max(1, math.ceil(remaining))


@dataclass
class SuspicionCounter:
    """Rolling outcome history and score for one client."""
    window: int
    score: int = 0
    protective: bool = False
    last_flagged_at: float | None = None
    burst_run: int = 0
    last_admitted_at: float | None = None
    outcomes: deque = field(init=False)

    def __post_init__(self):
        self.outcomes = deque(maxlen=self.window)

    def failure_ratio(self) -> float:
        if not self.outcomes:
            return 0.0
        failures = sum(1 for outcome in self.outcomes if outcome is SendOutcome.FAILURE)
        return failures / len(self.outcomes)

    def reset(self) -> None:
        self.score = 0
        self.protective = False
        self.last_flagged_at = None
        self.burst_run = 0
        self.outcomes.clear()


@dataclass
class ClientState:
    """Everything the gate tracks for one tenant-client."""
    client_id: str
    minute: RateWindow
    hour: RateWindow
    day: RateWindow
    suspicion: SuspicionCounter

    @property
    def windows(self) -> tuple[RateWindow, RateWindow, RateWindow]:
        return self.minute, self.hour, self.day

    def apply_limits(self, limits: RateLimits) -> None:
        self.minute.max = limits.per_minute
        self.hour.max = limits.per_hour
        self.day.max = limits.per_day


@dataclass(frozen=True)
class AdmissionResult:
    """Outcome of try_admit. A block is a value, not an error."""
    allowed: bool
    delay_ms: int = 0
    reason: AdmissionReason | None = None
    retry_after_seconds: int | None = None
    warnings: tuple[str, ...] = ()
    detail: str | None = None

    @classmethod
    def blocked(
        cls,
        reason: AdmissionReason,
        retry_after_seconds: int | None = None,
        detail: str | None = None,
    ) -> "AdmissionResult":
        return cls(
            allowed=False,
            reason=reason,
            retry_after_seconds=retry_after_seconds,
            detail=detail,
        )


# (client_id, alert_type, details) -> persisted somewhere
AlertSink = Callable[[str, AlertType, dict], Awaitable[None]]

_REASONS = {
    "minute": AdmissionReason.RATE_LIMIT_MINUTE,
    "hour": AdmissionReason.RATE_LIMIT_HOUR,
    "day": AdmissionReason.RATE_LIMIT_DAY,
}


def _validate_client_id(client_id) -> str:
    if not isinstance(client_id, str) or not client_id.strip():
        raise ValidationError("client_id is required")
    return client_id


class AdmissionGate:
    """
    Per-client rate ceilings, human-like pacing and suspicion scoring.

    State for each client lives in a KeyedStore; the check-and-increment of
    one client runs under that client's lock only, so clients never contend
    with each other.

    Example:
        gate = AdmissionGate()
        result = await gate.try_admit("org-1:client-7", "hello")
        if result.allowed:
            await asyncio.sleep(result.delay_ms / 1000)
            ...  # send through the transport
            await gate.record_outcome("org-1:client-7", SendOutcome.SUCCESS)
    """

    def __init__(
        self,
        default_limits: RateLimits | None = None,
        policy: AdmissionPolicy | None = None,
        content_screen: ContentScreen | None = None,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
        alert_sink: AlertSink | None = None,
        store: KeyedStore[ClientState] | None = None,
    ):
        self.default_limits = default_limits or RateLimits.defaults()
        self.policy = policy or AdmissionPolicy.from_settings()
        self.content_screen = content_screen or ContentScreen()
        self._clock = clock
        self._rng = rng or random.Random()
        self._alert_sink = alert_sink
        self._clients: KeyedStore[ClientState] = (
            store if store is not None else KeyedStore(self._new_client)
        )

    def _new_client(self, client_id: str) -> ClientState:
        now = self._clock()
        limits = self.default_limits
        return ClientState(
            client_id=client_id,
            minute=RateWindow("minute", MINUTE, limits.per_minute, now),
            hour=RateWindow("hour", HOUR, limits.per_hour, now),
            day=RateWindow("day", DAY, limits.per_day, now),
            suspicion=SuspicionCounter(window=self.policy.failure_window),
        )

    def configure_client(self, client_id: str, limits: RateLimits) -> None:
        """Set the ceilings for a client, keeping its current counts."""
        _validate_client_id(client_id)
        self._clients.get(client_id).apply_limits(limits)
        logger.info(
            "admission_limits_configured",
            client_id=client_id,
            per_minute=limits.per_minute,
            per_hour=limits.per_hour,
            per_day=limits.per_day,
        )

    def effective_minute_max(self, state: ClientState) -> int:
        if state.suspicion.protective:
            return max(1, state.minute.max // 2)
        return state.minute.max

    async def try_admit(self, client_id: str, message_content: str | None = None) -> AdmissionResult:
        """
        Decide whether client_id may send message_content now.

        Returns an allowed result carrying delay_ms, or a blocked result
        with a reason and, for rate limits, a retry hint in seconds.
        """
        _validate_client_id(client_id)

        screen = self.content_screen.screen(message_content)
        if screen.flagged:
            logger.warning(
                "admission_blocked_content",
                client_id=client_id,
                rule=screen.rule,
            )
            track_admission(AdmissionReason.CONTENT.value)
            return AdmissionResult.blocked(AdmissionReason.CONTENT, detail=screen.rule)

        alerts: list[tuple[AlertType, dict]] = []

        async with self._clients.locked(client_id) as state:
            now = self._clock()
            self._decay(state, now)

            for window in state.windows:
                window.refresh(now)

            ceilings = (
                (state.minute, self.effective_minute_max(state)),
                (state.hour, state.hour.max),
                (state.day, state.day.max),
            )
            for window, ceiling in ceilings:
                if window.count >= ceiling:
                    reason = _REASONS[window.name]
                    retry_after = window.retry_after(now)
                    logger.info(
                        "admission_blocked_rate_limit",
                        client_id=client_id,
                        window=window.name,
                        count=window.count,
                        ceiling=ceiling,
                        retry_after_seconds=retry_after,
                    )
                    track_admission(reason.value)
                    return AdmissionResult.blocked(reason, retry_after_seconds=retry_after)

            for window in state.windows:
                window.count += 1

            warnings = tuple(
                f"approaching_{window.name}_limit"
                for window, ceiling in ceilings
                if window.count >= ceiling * self.policy.warning_ratio
            )
            alerts.extend(self._track_burst(state, now))

        await self._emit_alerts(client_id, alerts)

        track_admission("allowed")
        return AdmissionResult(
            allowed=True,
            delay_ms=self.compute_delay_ms(),
            warnings=warnings,
        )

    async def record_outcome(self, client_id: str, outcome: SendOutcome | str) -> None:
        """
        Feed a send result into the client's rolling failure ratio.

        Only a failure that leaves the ratio above the threshold scores;
        successes never raise the score.
        """
        _validate_client_id(client_id)
        outcome = SendOutcome(outcome)
        alerts: list[tuple[AlertType, dict]] = []

        async with self._clients.locked(client_id) as state:
            now = self._clock()
            self._decay(state, now)
            suspicion = state.suspicion
            suspicion.outcomes.append(outcome)

            ratio = suspicion.failure_ratio()
            if outcome is SendOutcome.FAILURE and ratio > self.policy.failure_ratio:
                alerts.extend(
                    self._flag(state, now, "failure_ratio", failure_ratio=round(ratio, 3))
                )

        await self._emit_alerts(client_id, alerts)

    async def reset_suspicion(self, client_id: str) -> None:
        """Clear the suspicion score, e.g. after a successful reconnection."""
        _validate_client_id(client_id)
        async with self._clients.locked(client_id) as state:
            was_protective = state.suspicion.protective
            state.suspicion.reset()
        if was_protective:
            logger.info("protective_measures_lifted", client_id=client_id, cause="reset")

    def compute_delay_ms(self) -> int:
        """Human-like pause: usually 2-5s, occasionally a 5-15s hesitation."""
        policy = self.policy
        delay = self._rng.uniform(policy.delay_min_ms, policy.delay_max_ms)
        if self._rng.random() < policy.long_pause_probability:
            delay = self._rng.uniform(policy.long_pause_min_ms, policy.long_pause_max_ms)
        return int(round(delay))

    def snapshot(self, client_id: str) -> dict | None:
        """Current counters of a client, for diagnostics."""
        state = self._clients.peek(client_id)
        if state is None:
            return None
        return {
            "client_id": client_id,
            "windows": {
                window.name: {
                    "count": window.count,
                    "max": window.max,
                    "window_start": window.window_start,
                }
                for window in state.windows
            },
            "effective_minute_max": self.effective_minute_max(state),
            "suspicion_score": state.suspicion.score,
            "protective": state.suspicion.protective,
        }

    def _decay(self, state: ClientState, now: float) -> None:
        suspicion = state.suspicion
        if suspicion.last_flagged_at is None:
            return
        if now - suspicion.last_flagged_at >= self.policy.cooldown_seconds:
            was_protective = suspicion.protective
            suspicion.reset()
            if was_protective:
                logger.info("protective_measures_lifted", client_id=state.client_id, cause="cooldown")

    def _track_burst(self, state: ClientState, now: float) -> list[tuple[AlertType, dict]]:
        suspicion = state.suspicion
        last = suspicion.last_admitted_at
        suspicion.last_admitted_at = now

        if last is not None and now - last < self.policy.burst_interval_seconds:
            suspicion.burst_run += 1
        else:
            suspicion.burst_run = 0

        if suspicion.burst_run >= self.policy.burst_length:
            suspicion.burst_run = 0
            return self._flag(state, now, "burst", burst_length=self.policy.burst_length)
        return []

    def _flag(self, state: ClientState, now: float, heuristic: str, **details) -> list[tuple[AlertType, dict]]:
        """Increment the score; switch on protective measures at the threshold."""
        suspicion = state.suspicion
        suspicion.score += 1
        suspicion.last_flagged_at = now
        alerts = [
            (
                AlertType.SUSPICIOUS_ACTIVITY,
                {"heuristic": heuristic, "score": suspicion.score, **details},
            )
        ]
        logger.warning(
            "suspicious_activity_detected",
            client_id=state.client_id,
            heuristic=heuristic,
            score=suspicion.score,
        )

        if not suspicion.protective and suspicion.score >= self.policy.score_threshold:
            suspicion.protective = True
            effective = self.effective_minute_max(state)
            alerts.append(
                (
                    AlertType.PROTECTIVE_MEASURES_ACTIVATED,
                    {"score": suspicion.score, "effective_minute_max": effective},
                )
            )
            logger.warning(
                "protective_measures_activated",
                client_id=state.client_id,
                score=suspicion.score,
                effective_minute_max=effective,
            )
        return alerts

    async def _emit_alerts(self, client_id: str, alerts: list[tuple[AlertType, dict]]) -> None:
        for alert_type, details in alerts:
            track_suspicion_alert(alert_type.value)
            if self._alert_sink is None:
                continue
            try:
                await self._alert_sink(client_id, alert_type, details)
            except Exception as e:
                logger.error(
                    "ban_alert_record_failed",
                    client_id=client_id,
                    alert_type=alert_type.value,
                    error=str(e),
                )
                capture_exception()
