"""Problem reports shared between monitors and exporters."""

from __future__ import annotations

import abc
import queue
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable


class Severity(str, Enum):
    """Severity of a problem event."""

    INFO = "info"
    WARN = "warn"


class ConditionStatus(str, Enum):
    """Whether a node is in a given condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ProblemType(str, Enum):
    """Whether a problem is temporary (an event) or permanent (a condition)."""

    TEMP = "temporary"
    PERM = "permanent"


@dataclass
class Condition:
    """A node condition as tracked by the detector."""

    type: str
    status: ConditionStatus
    transition: datetime
    reason: str = ""
    message: str = ""

    def _to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "status": ConditionStatus(self.status).value,
            "transition": self.transition.isoformat(),
            "reason": self.reason,
            "message": self.message,
        }


@dataclass
class Event:
    """A temporary problem event."""

    severity: Severity
    timestamp: datetime
    reason: str = ""
    message: str = ""

    def _to_dict(self) -> dict[str, Any]:
        return {
            "severity": Severity(self.severity).value,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
            "message": self.message,
        }


@dataclass
class Status:
    """What a problem daemon reports: events (oldest first) and current conditions."""

    source: str
    events: list[Event] = field(default_factory=list)
    conditions: list[Condition] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable representation."""
        return {
            "source": self.source,
            "events": [event._to_dict() for event in self.events],
            "conditions": [condition._to_dict() for condition in self.conditions],
        }


class Monitor(abc.ABC):
    """Watches the system and reports problems and metrics."""

    @abc.abstractmethod
    def start(self) -> queue.Queue[Status] | None:
        """Start monitoring.

        Returns a queue on which statuses are reported, or None when the
        monitor only records metrics.
        """

    @abc.abstractmethod
    def stop(self) -> None:
        """Stop monitoring."""


@dataclass(frozen=True)
class ProblemDaemonHandler:
    """How to create one type of problem daemon from a config path."""

    create_problem_daemon_or_die: Callable[[str], Monitor]
    cmd_option_description: str = ""