from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import logging
from typing import Iterator, Literal, Protocol

from propdesk.core.errors import PropdeskError


logger = logging.getLogger(__name__)

OutcomeKind = Literal["success", "error"]


@dataclass(frozen=True)
class MutationOutcome:
    kind: OutcomeKind
    message: str

    @classmethod
    def success(cls, message: str) -> "MutationOutcome":
        return cls(kind="success", message=message)

    @classmethod
    def error(cls, message: str) -> "MutationOutcome":
        return cls(kind="error", message=message)


class Notifier(Protocol):
    def notify(self, kind: OutcomeKind, message: str) -> None:
        ...


class LoggingNotifier:
    # Stand-in for a UI toast channel; outcomes land in the service log.
    def notify(self, kind: OutcomeKind, message: str) -> None:
        if kind == "error":
            logger.warning("mutation_outcome kind=error message=%s", message)
        else:
            logger.info("mutation_outcome kind=success message=%s", message)


class RecordingNotifier:
    # Keeps outcomes in memory for callers that render them later.
    def __init__(self) -> None:
        self.outcomes: list[MutationOutcome] = []

    def notify(self, kind: OutcomeKind, message: str) -> None:
        self.outcomes.append(MutationOutcome(kind=kind, message=message))


def report_outcome(notifier: Notifier | None, outcome: MutationOutcome | None) -> None:
    if notifier is None or outcome is None:
        return
    notifier.notify(outcome.kind, outcome.message)


@contextmanager
def track_mutation(notifier: Notifier | None, success: str, failure_prefix: str) -> Iterator[None]:
    """Report a mutation's outcome, then let any failure propagate unchanged."""
    try:
        yield
    except PropdeskError as exc:
        report_outcome(notifier, MutationOutcome.error(f"{failure_prefix}: {exc}"))
        raise
    report_outcome(notifier, MutationOutcome.success(success))
