"""Low-disturbance selection of an initiator address for joining the bus."""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Sequence

from ebuslink.context import Context, ContextError, background, with_timeout
from ebuslink.frame import EbusError, Frame, is_initiator_capable_address

INITIATOR_ADDRESSES_ASCENDING = (
    0x00, 0x01, 0x03, 0x07, 0x0F,
    0x10, 0x11, 0x13, 0x17, 0x1F,
    0x30, 0x31, 0x33, 0x37, 0x3F,
    0x70, 0x71, 0x73, 0x77, 0x7F,
    0xF0, 0xF1, 0xF3, 0xF7, 0xFF,
)
INITIATOR_ADDRESSES_DESCENDING = tuple(reversed(INITIATOR_ADDRESSES_ASCENDING))

_DEFAULT_LISTEN_WARMUP = 5.0
_DEFAULT_INQUIRY_COOLDOWN = 60.0
_DEFAULT_INQUIRY_MAX_ATTEMPTS = 3
_DEFAULT_REJOIN_BACKOFF_BASE = 1.0
_DEFAULT_REJOIN_BACKOFF_MAX = 30.0
_DEFAULT_GRACE_AFTER_REJOIN = 0.75
_INQUIRY_FOLLOWUP_LISTEN_WINDOW = 1.5
_LIKELY_TARGET_SOURCE_MIN = 2
_LIKELY_TARGET_DESTINATION_MIN = 2
_TOP_TALKER_COUNT = 8
_COMPANION_OFFSET = 0x05


class JoinBus(ABC):
    """The bus capabilities needed for address selection."""

    @abstractmethod
    def listen(self, ctx: Context, on_frame: Callable[[Frame], None]) -> None:
        """Deliver received frames to on_frame until ctx expires or is canceled."""

    @abstractmethod
    def inquiry_existence(self, ctx: Context) -> None:
        """Trigger an active presence probe."""


class JoinStateStore(ABC):
    """Persists the last successful initiator address."""

    @abstractmethod
    def load_initiator(self, ctx: Context) -> int:
        """Return the stored initiator address."""

    @abstractmethod
    def save_initiator(self, ctx: Context, initiator: int) -> None:
        """Store the initiator address."""


@dataclass(frozen=True)
class JoinConfig:
    """Selection behaviour; durations in seconds, non-positive means default.

    ``prefer_highest`` and ``persist_last_good`` default to True when None.
    """

    listen_warmup: float = 0.0
    prefer_highest: Optional[bool] = None
    inquiry_enabled: bool = False
    inquiry_cooldown: float = 0.0
    inquiry_max_attempts: int = 0
    inquiry_disable_on_no_new: bool = False
    rejoin_backoff_base: float = 0.0
    rejoin_backoff_max: float = 0.0
    force_if_all_occupied: bool = False
    persist_last_good: Optional[bool] = None
    grace_period_after_rejoin: float = 0.0


def _normalize(config: JoinConfig) -> JoinConfig:
    def positive(value: float, default: float) -> float:
        return value if value > 0 else default

    return replace(
        config,
        listen_warmup=positive(config.listen_warmup, _DEFAULT_LISTEN_WARMUP),
        prefer_highest=True if config.prefer_highest is None else config.prefer_highest,
        inquiry_cooldown=positive(config.inquiry_cooldown, _DEFAULT_INQUIRY_COOLDOWN),
        inquiry_max_attempts=int(
            positive(config.inquiry_max_attempts, _DEFAULT_INQUIRY_MAX_ATTEMPTS)
        ),
        rejoin_backoff_base=positive(config.rejoin_backoff_base, _DEFAULT_REJOIN_BACKOFF_BASE),
        rejoin_backoff_max=positive(config.rejoin_backoff_max, _DEFAULT_REJOIN_BACKOFF_MAX),
        grace_period_after_rejoin=positive(
            config.grace_period_after_rejoin, _DEFAULT_GRACE_AFTER_REJOIN
        ),
        persist_last_good=True if config.persist_last_good is None else config.persist_last_good,
    )


@dataclass
class JoinMetrics:
    """Selection telemetry."""

    warmup_duration_actual: float = 0.0
    candidates_considered: List[int] = field(default_factory=list)
    rejection_reasons: Dict[int, List[str]] = field(default_factory=dict)
    observed_sources: List[int] = field(default_factory=list)
    observed_initiators: List[int] = field(default_factory=list)
    observed_probable_targets: List[int] = field(default_factory=list)
    top_talkers_by_source: List[int] = field(default_factory=list)
    forced: bool = False

    def _consider(self, candidate: int) -> None:
        if candidate not in self.candidates_considered:
            self.candidates_considered.append(candidate)

    def _reject(self, candidate: int, *reasons: str) -> None:
        self.rejection_reasons.setdefault(candidate, []).extend(reasons)


@dataclass(frozen=True)
class JoinResult:
    """The chosen initiator and its companion target address."""

    initiator: int
    companion_target: int
    metrics: JoinMetrics


class NoFreeInitiatorAddressError(EbusError):
    """All initiator addresses are occupied and forcing is disabled."""

    def __init__(self, observed_initiators: Sequence[int], metrics: JoinMetrics) -> None:
        self.observed_initiators = list(observed_initiators)
        self.metrics = metrics
        super().__init__(
            f"ebus: no free initiator address (observed: {bytes(self.observed_initiators).hex()})"
        )


class _Observation:
    def __init__(self) -> None:
        self.source_count: Counter = Counter()
        self.target_count: Counter = Counter()
        self.sources: set = set()
        self.initiators: set = set()
        self.probable_targets: set = set()

    def add_frame(self, frame: Frame) -> None:
        self.source_count[frame.source] += 1
        self.target_count[frame.target] += 1
        self.sources.add(frame.source)
        if is_initiator_capable_address(frame.source):
            self.initiators.add(frame.source)
        else:
            self.probable_targets.add(frame.source)

    def top_talkers(self, limit: int) -> List[int]:
        ranked = sorted(self.source_count.items(), key=lambda item: (-item[1], item[0]))
        if limit > 0:
            ranked = ranked[:limit]
        return [address for address, _ in ranked]

    def companion_rejection_reasons(self, initiator: int) -> List[str]:
        companion = (initiator + _COMPANION_OFFSET) & 0xFF
        reasons = []
        if (
            not is_initiator_capable_address(companion)
            and self.source_count[companion] >= _LIKELY_TARGET_SOURCE_MIN
        ):
            reasons.append("companion-target-seen-as-probable-target-source")
        if self.target_count[companion] >= _LIKELY_TARGET_DESTINATION_MIN:
            reasons.append("companion-target-frequently-addressed")
        return reasons


class Joiner:
    """Selects an initiator address after passively observing the bus."""

    def __init__(
        self,
        bus: JoinBus,
        store: Optional[JoinStateStore] = None,
        config: Optional[JoinConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bus = bus
        self._store = store
        self._config = _normalize(config or JoinConfig())
        self._clock = clock
        self._lock = threading.Lock()
        self._inquiry_attempts = 0
        self._inquiry_no_new_count = 0
        self._inquiry_disabled = False
        self._last_inquiry_at: Optional[float] = None

    def join(self, ctx: Optional[Context] = None) -> JoinResult:
        """Observe, optionally probe, then choose an initiator address."""
        if self._bus is None:
            raise ValueError("ebus: joiner bus is nil")
        if ctx is None:
            ctx = background()
        cfg = self._config

        observation = _Observation()
        warmup = self._observe_window(ctx, cfg.listen_warmup, observation)

        if self._should_run_inquiry():
            self._mark_inquiry_attempt()
            self._run_inquiry(ctx, observation)

        metrics = JoinMetrics(
            warmup_duration_actual=warmup,
            observed_sources=sorted(observation.sources),
            observed_initiators=sorted(observation.initiators),
            observed_probable_targets=sorted(observation.probable_targets),
            top_talkers_by_source=observation.top_talkers(_TOP_TALKER_COUNT),
        )

        order = (
            INITIATOR_ADDRESSES_DESCENDING if cfg.prefer_highest else INITIATOR_ADDRESSES_ASCENDING
        )
        persisted = self._load_persisted(ctx) if cfg.persist_last_good else None

        chosen, forced = self._select(order, observation, persisted, metrics)
        if forced:
            metrics.forced = True

        if cfg.persist_last_good and self._store is not None:
            try:
                self._store.save_initiator(ctx, chosen)
            except Exception:  # noqa: BLE001 - persistence is best effort
                pass

        return JoinResult(
            initiator=chosen,
            companion_target=(chosen + _COMPANION_OFFSET) & 0xFF,
            metrics=metrics,
        )

    def _run_inquiry(self, ctx: Context, observation: _Observation) -> None:
        try:
            self._bus.inquiry_existence(ctx)
        except ContextError:
            raise
        except Exception:  # noqa: BLE001 - a failed probe only matters if ctx ended
            parent_error = ctx.err()
            if parent_error is not None:
                raise parent_error from None
            return
        before = len(observation.initiators)
        try:
            self._observe_window(ctx, _INQUIRY_FOLLOWUP_LISTEN_WINDOW, observation)
        except ContextError:
            pass
        self._mark_inquiry_result(len(observation.initiators) > before)

    def _load_persisted(self, ctx: Context) -> Optional[int]:
        if self._store is None:
            return None
        try:
            persisted = self._store.load_initiator(ctx)
        except Exception:  # noqa: BLE001 - missing state just means no preference
            return None
        return persisted if is_initiator_capable_address(persisted) else None

    def _observe_window(self, ctx: Context, duration: float, observation: _Observation) -> float:
        if duration <= 0:
            return 0.0
        started = self._clock()
        window = with_timeout(ctx, duration)
        try:
            self._bus.listen(window, observation.add_frame)
        except ContextError:
            parent_error = ctx.err()
            if parent_error is not None:
                raise parent_error from None
        finally:
            window.cancel()
        return self._clock() - started

    def _should_run_inquiry(self) -> bool:
        cfg = self._config
        if not cfg.inquiry_enabled or cfg.inquiry_max_attempts <= 0:
            return False
        with self._lock:
            if self._inquiry_disabled or self._inquiry_attempts >= cfg.inquiry_max_attempts:
                return False
            if cfg.inquiry_cooldown > 0 and self._last_inquiry_at is not None:
                if self._clock() - self._last_inquiry_at < cfg.inquiry_cooldown:
                    return False
            return True

    def _mark_inquiry_attempt(self) -> None:
        with self._lock:
            self._inquiry_attempts += 1
            self._last_inquiry_at = self._clock()

    def _mark_inquiry_result(self, found_new: bool) -> None:
        with self._lock:
            if found_new:
                self._inquiry_no_new_count = 0
                return
            self._inquiry_no_new_count += 1
            if (
                self._config.inquiry_disable_on_no_new
                and self._inquiry_no_new_count >= self._config.inquiry_max_attempts
            ):
                self._inquiry_disabled = True

    def _select(
        self,
        order: Sequence[int],
        observation: _Observation,
        persisted: Optional[int],
        metrics: JoinMetrics,
    ) -> tuple:
        occupied = observation.initiators
        free = [candidate for candidate in order if candidate not in occupied]

        if persisted is not None:
            metrics._consider(persisted)
            if persisted in occupied:
                metrics._reject(persisted, "persisted-occupied")
            else:
                reasons = observation.companion_rejection_reasons(persisted)
                if not reasons:
                    return persisted, False
                metrics._reject(persisted, *reasons)

        if not free:
            if not self._config.force_if_all_occupied or not order:
                raise NoFreeInitiatorAddressError(metrics.observed_initiators, metrics)
            chosen = order[0]
            metrics._consider(chosen)
            metrics._reject(chosen, "force-if-all-occupied")
            return chosen, True

        for candidate in free:
            metrics._consider(candidate)
            reasons = observation.companion_rejection_reasons(candidate)
            if not reasons:
                return candidate, False
            metrics._reject(candidate, *reasons)

        first_free = free[0]
        metrics._reject(first_free, "heuristic-overridden")
        return first_free, False