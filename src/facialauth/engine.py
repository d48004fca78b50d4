"""
Timed authentication decision engine.

One session pulls frames from a frame source, extracts a descriptor from each
usable frame and asks the recognizer for a match, until it either matches,
runs out of time, runs out of frames, or hits an unrecoverable error:

    Idle -> Sampling -> Evaluating -> Succeeded
               ^  |         |
               +--+---------+   (empty frame / no face / no match, time left)
               |            |
               v            v
      TimedOut / Failed / Errored

The deadline is fixed when the session starts and is checked before every
new sampling attempt, including after every pacing sleep. An evaluation that
began before the deadline is allowed to finish. Every path that is not a
positive match resolves to a non-success outcome.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import numpy as np

from facialauth import model_store
from facialauth.config import AuthSettings
from facialauth.errors import ConfigError, ExtractionError, FacialAuthError, FormatError
from facialauth.extractors import DescriptorExtractor
from facialauth.recognition import Recognizer, recognizer_for

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    EVALUATING = "evaluating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ERRORED = "errored"

    @property
    def terminal(self) -> bool:
        return self not in _TRANSITIONS


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.SAMPLING, SessionState.ERRORED}),
    SessionState.SAMPLING: frozenset(
        {
            SessionState.SAMPLING,
            SessionState.EVALUATING,
            SessionState.TIMED_OUT,
            SessionState.FAILED,
            SessionState.ERRORED,
        }
    ),
    SessionState.EVALUATING: frozenset(
        {
            SessionState.SAMPLING,
            SessionState.SUCCEEDED,
            SessionState.TIMED_OUT,
            SessionState.ERRORED,
        }
    ),
}


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    ERROR = "error"


class FailureReason(str, Enum):
    SOURCE_EXHAUSTED = "source_exhausted"
    MODEL_MISSING = "model_missing"


@dataclass(frozen=True)
class Decision:
    """Terminal result of one authentication request."""

    outcome: Outcome
    label: str | None = None
    score: float | None = None
    reason: FailureReason | None = None
    detail: str | None = None
    frames: int = 0
    elapsed: float = 0.0

    @property
    def authenticated(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @classmethod
    def success(cls, label: str | None, score: float, **kwargs) -> "Decision":
        return cls(Outcome.SUCCESS, label=label, score=score, **kwargs)

    @classmethod
    def failure(cls, reason: FailureReason, **kwargs) -> "Decision":
        return cls(Outcome.FAILURE, reason=reason, **kwargs)

    @classmethod
    def timeout(cls, **kwargs) -> "Decision":
        return cls(Outcome.TIMEOUT, **kwargs)

    @classmethod
    def error(cls, detail: str, **kwargs) -> "Decision":
        return cls(Outcome.ERROR, detail=detail, **kwargs)


@dataclass
class AuthSession:
    """Mutable state of a single authentication attempt."""

    started_at: float
    deadline: float
    state: SessionState = SessionState.IDLE
    frames: int = 0
    evaluated: int = 0
    best_score: float | None = None
    best_label: str | None = None

    @classmethod
    def create(cls, now: float, timeout: float) -> "AuthSession":
        return cls(started_at=now, deadline=now + timeout)

    def transition(self, new_state: SessionState) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise RuntimeError(f"Illegal session transition {self.state.value} -> {new_state.value}")
        self.state = new_state

    def expired(self, now: float) -> bool:
        return now >= self.deadline


def _usable(frame) -> bool:
    return frame is not None and np.asarray(frame).size > 0


class DecisionEngine:
    """
    Runs one bounded-time authentication session.

    The engine is single-threaded: each iteration blocks on the frame source,
    then on extraction and prediction. Cancellation is cooperative and is
    checked once per iteration; the default pacing sleep waits on the
    cancellation event, so setting it wakes a sleeping session immediately.
    """

    def __init__(
        self,
        recognizer: Recognizer,
        extractor: DescriptorExtractor,
        settings: AuthSettings,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], object] | None = None,
        cancel: threading.Event | None = None,
    ):
        """
        Args:
            recognizer: Recognizer with a loaded model
            extractor: Turns frames into descriptors
            settings: Timeout and pacing settings
            clock: Monotonic time source in seconds
            sleep: Pacing sleep; defaults to waiting on the cancel event
            cancel: Cancellation signal shared with the caller
        """
        self.recognizer = recognizer
        self.extractor = extractor
        self.timeout = float(settings.timeout_seconds)
        self.interval = settings.frame_interval_ms / 1000.0
        self.clock = clock
        self.cancel = cancel if cancel is not None else threading.Event()
        self._sleep = sleep if sleep is not None else self.cancel.wait
        self.session: AuthSession | None = None

    def run(
        self,
        frames: Iterable[np.ndarray | None],
        expected_label: str | None = None,
    ) -> Decision:
        """
        Run a session to its terminal outcome.

        Args:
            frames: Frame source; None or empty arrays mean "no frame now"
            expected_label: If given, only a match on this label succeeds

        Returns:
            Success, Failure, Timeout or Error decision
        """
        session = AuthSession.create(self.clock(), self.timeout)
        self.session = session
        decision = self._run(session, iter(frames), expected_label)

        logger.info(
            f"Session {decision.outcome.value}: state={session.state.value} "
            f"frames={session.frames} evaluated={session.evaluated} "
            f"best_score={session.best_score} elapsed={decision.elapsed:.2f}s"
            + (f" ({decision.detail})" if decision.detail else "")
        )
        return decision

    def _run(
        self,
        session: AuthSession,
        frames: Iterator[np.ndarray | None],
        expected_label: str | None,
    ) -> Decision:
        if not self.recognizer.ready:
            return self._errored(session, "Recognizer has no model loaded")

        session.transition(SessionState.SAMPLING)
        while True:
            if self.cancel.is_set():
                return self._errored(session, "Cancelled")
            if session.expired(self.clock()):
                return self._timed_out(session)

            try:
                frame = next(frames)
            except StopIteration:
                return self._failed(session, FailureReason.SOURCE_EXHAUSTED)
            except FacialAuthError as e:
                return self._errored(session, f"Frame source failed: {e}")
            except Exception as e:
                logger.exception("Frame source raised an unexpected error")
                return self._errored(session, f"Frame source failed: {e}")

            session.frames += 1

            if _usable(frame):
                session.transition(SessionState.EVALUATING)
                try:
                    match = self._evaluate(session, frame, expected_label)
                except ExtractionError as e:
                    logger.debug(f"Frame {session.frames}: {e}")
                    match = None
                except Exception as e:
                    logger.exception(f"Evaluation of frame {session.frames} failed")
                    return self._errored(session, f"Evaluation failed: {e}")

                if match is not None:
                    label, score = match
                    session.transition(SessionState.SUCCEEDED)
                    return Decision.success(label, score, **self._stats(session))

                if session.expired(self.clock()):
                    return self._timed_out(session)

            session.transition(SessionState.SAMPLING)
            self._pace(session)

    def _evaluate(
        self, session: AuthSession, frame: np.ndarray, expected_label: str | None
    ) -> tuple[str | None, float] | None:
        """Return (label, score) on a positive match, None otherwise."""
        descriptor = self.extractor.extract(frame)
        result = self.recognizer.predict(descriptor)
        session.evaluated += 1

        if self.recognizer.is_better(result.score, session.best_score):
            session.best_score = result.score
            session.best_label = result.matched_label

        logger.debug(
            f"Frame {session.frames}: label={result.matched_label} "
            f"score={result.score:.4f} match={result.is_match}"
        )

        if not result.is_match:
            return None
        if expected_label is not None and result.matched_label != expected_label:
            logger.warning(
                f"Frame {session.frames} matched {result.matched_label}, "
                f"expected {expected_label}"
            )
            return None
        return result.matched_label, result.score

    def _pace(self, session: AuthSession) -> None:
        """Sleep up to one frame interval, never past the deadline."""
        remaining = session.deadline - self.clock()
        delay = min(self.interval, remaining)
        if delay > 0:
            self._sleep(delay)

    def _stats(self, session: AuthSession) -> dict:
        return {"frames": session.frames, "elapsed": self.clock() - session.started_at}

    def _timed_out(self, session: AuthSession) -> Decision:
        session.transition(SessionState.TIMED_OUT)
        return Decision.timeout(score=session.best_score, **self._stats(session))

    def _failed(self, session: AuthSession, reason: FailureReason) -> Decision:
        session.transition(SessionState.FAILED)
        return Decision.failure(reason, score=session.best_score, **self._stats(session))

    def _errored(self, session: AuthSession, detail: str) -> Decision:
        session.transition(SessionState.ERRORED)
        return Decision.error(detail, **self._stats(session))


def decide(
    settings: AuthSettings,
    frames: Iterable[np.ndarray | None],
    extractor: DescriptorExtractor,
    model_path: Path | str,
    expected_label: str | None = None,
    cancel: threading.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], object] | None = None,
) -> Decision:
    """
    Authenticate against the model at model_path.

    A missing model is a Failure (model_missing); an unreadable, corrupt or
    mismatched model, or an unknown method, is an Error. Neither ever
    succeeds.
    """
    kwargs = {}
    if settings.method == "embedding_similarity":
        kwargs["embedding_dim"] = getattr(extractor, "dimension", None)

    try:
        recognizer = recognizer_for(settings, **kwargs)
        recognizer.load(model_store.read_model(model_path, expected_algorithm=recognizer.algorithm))
    except FileNotFoundError:
        logger.warning(f"No model found at {model_path}")
        return Decision.failure(FailureReason.MODEL_MISSING, detail=f"No model at {model_path}")
    except (ConfigError, FormatError) as e:
        logger.error(f"Cannot use model {model_path}: {e}")
        return Decision.error(str(e))
    except OSError as e:
        logger.error(f"Cannot read model {model_path}: {e}")
        return Decision.error(f"Cannot read model: {e}")

    engine = DecisionEngine(recognizer, extractor, settings, clock=clock, sleep=sleep, cancel=cancel)
    return engine.run(frames, expected_label=expected_label)
