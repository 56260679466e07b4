import enum
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .config import DEFAULT_COOLDOWN_SECONDS, MATCH_THRESHOLD, UNKNOWN_LABEL

logger = logging.getLogger(__name__)


class InvalidArgument(ValueError):
    """Bad cooldown value or degenerate report window."""


class Outcome(str, enum.Enum):
    ADMITTED = "admitted"
    SUPPRESSED = "suppressed"
    REJECTED = "rejected"


class Reason(str, enum.Enum):
    NO_CONFIDENT_MATCH = "no_confident_match"
    COOLDOWN = "cooldown"


@dataclass(frozen=True)
class RecognitionEvent:
    subject: str
    confidence: float  # distance, lower is a better match
    observed_at: datetime


@dataclass(frozen=True)
class AttendanceRecord:
    subject: str
    marked_at: datetime
    confidence: float


@dataclass(frozen=True)
class Decision:
    outcome: Outcome
    reason: Optional[Reason] = None
    remaining_ms: int = 0
    record: Optional[AttendanceRecord] = None

    @property
    def admitted(self):
        return self.outcome is Outcome.ADMITTED


@dataclass(frozen=True)
class ReportWindow:
    start_at: datetime
    end_at: datetime  # exclusive
    interval_seconds: int

    @property
    def interval_ms(self):
        return self.interval_seconds * 1000

    def slot_of(self, moment):
        """Index of the slot containing moment, counted from start_at"""
        # Integer milliseconds; timedelta cannot hold arbitrarily large intervals
        return (moment - self.start_at) // timedelta(milliseconds=1) // self.interval_ms

    @property
    def total_slots(self):
        if self.interval_seconds <= 0 or self.end_at <= self.start_at:
            return 0
        return self.slot_of(self.end_at)


@dataclass(frozen=True)
class ReportRow:
    subject: str
    marked_slots: int
    total_slots: int
    percentage: float

    def to_dict(self):
        return {
            "name": self.subject,
            "marked_slots": self.marked_slots,
            "total_slots": self.total_slots,
            "percentage": self.percentage,
        }


class AttendanceReconciler:
    """
    Decides which recognition events become attendance records and builds
    attendance-percentage reports.

    The only mutable state is the per-subject time of the last admission.
    A subject is admitted again once strictly more than the cooldown has
    elapsed since that time; the check is evaluated lazily on the next
    event, there is no timer.
    """

    def __init__(self, cooldown_seconds=DEFAULT_COOLDOWN_SECONDS, threshold=MATCH_THRESHOLD):
        self._lock = threading.Lock()
        self._last_admitted = {}
        self._cooldown_ms = 0
        self.threshold = threshold
        self.set_cooldown(cooldown_seconds)

    @property
    def cooldown_ms(self):
        return self._cooldown_ms

    @property
    def cooldown_seconds(self):
        return self._cooldown_ms // 1000

    def set_cooldown(self, seconds):
        """Replace the cooldown used by later observe() calls."""
        if isinstance(seconds, bool) or not isinstance(seconds, int) or seconds <= 0:
            raise InvalidArgument(f"Cooldown must be a positive number of seconds, got {seconds!r}")
        # Existing last-admitted times are kept and compared against the new value.
        self._cooldown_ms = seconds * 1000
        logger.info("Cooldown set to %d seconds", seconds)

    def last_admitted_at(self, subject):
        return self._last_admitted.get(subject)

    def observe(self, event, threshold=None, cooldown_ms=None):
        """Gate one recognition event; returns a Decision."""
        if threshold is None:
            threshold = self.threshold
        if cooldown_ms is None:
            cooldown_ms = self._cooldown_ms
        elif cooldown_ms <= 0:
            raise InvalidArgument(f"Cooldown must be positive, got {cooldown_ms!r} ms")

        if event.subject == UNKNOWN_LABEL or event.confidence >= threshold:
            logger.debug("No confident match for %s (%.2f)", event.subject, event.confidence)
            return Decision(Outcome.REJECTED, reason=Reason.NO_CONFIDENT_MATCH)

        with self._lock:
            last = self._last_admitted.get(event.subject)
            if last is not None:
                # Integer microseconds; timedelta cannot hold arbitrarily long cooldowns
                elapsed_us = (event.observed_at - last) // timedelta(microseconds=1)
                if elapsed_us <= cooldown_ms * 1000:
                    remaining = -((elapsed_us - cooldown_ms * 1000) // 1000)
                    logger.debug("%s on cooldown, %d ms remaining", event.subject, remaining)
                    return Decision(Outcome.SUPPRESSED, reason=Reason.COOLDOWN, remaining_ms=remaining)
            self._last_admitted[event.subject] = event.observed_at

        logger.info("Admitted %s (distance %.2f)", event.subject, event.confidence)
        record = AttendanceRecord(event.subject, event.observed_at, event.confidence)
        return Decision(Outcome.ADMITTED, record=record)

    def report(self, window, records, subjects):
        """Per-subject attendance percentage over the window's time slots."""
        total_slots = window.total_slots
        if total_slots <= 0:
            raise InvalidArgument(
                "Class duration is too short or the check interval is too large "
                "for a percentage calculation"
            )

        slots = {}
        for record in records:
            if not (window.start_at <= record.marked_at < window.end_at):
                continue
            slot_index = window.slot_of(record.marked_at)
            slots.setdefault(record.subject, set()).add(slot_index)

        rows = []
        for subject in set(subjects):
            marked = len(slots.get(subject, ()))
            rows.append(ReportRow(subject, marked, total_slots, round(100 * marked / total_slots, 2)))

        # total_slots is shared by every row, so marked_slots orders percentages exactly
        rows.sort(key=lambda row: (-row.marked_slots, row.subject))
        return rows
