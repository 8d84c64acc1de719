"""
Data model shared by the pull (definition) and push (result) phases.

Nodes and flat steps are rebuilt on every pull and never persisted; result rows are
rebuilt on every push from the action path / step identifier strings alone.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class StepKind(str, Enum):
    """Kind of node found in a steps document."""
    LEAF = "leaf"
    SHARED_REFERENCE = "shared_reference"


@dataclass
class StepNode:
    """
    One node of a parsed steps document.

    A SHARED_REFERENCE points at an external shared-steps work item (``ref_id``) and is
    placed in the document under its own ``placement_id``.
    """
    kind: StepKind
    placement_id: int
    ref_id: Optional[int] = None
    action: str = ""
    expected_results: List[str] = field(default_factory=list)
    inline_children: List["StepNode"] = field(default_factory=list)

    @property
    def is_leaf(self) -> bool:
        return self.kind == StepKind.LEAF


@dataclass(frozen=True)
class GroupContext:
    """Shared-steps group a step was expanded from."""
    group_id: int
    group_revision: int
    group_path_prefix: str

    def to_dict(self) -> dict:
        return {
            "groupId": self.group_id,
            "groupRevision": self.group_revision,
            "groupPathPrefix": self.group_path_prefix,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GroupContext":
        return cls(
            group_id=int(data["groupId"]),
            group_revision=int(data.get("groupRevision", 1)),
            group_path_prefix=data["groupPathPrefix"],
        )


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime; naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def azure_date(value: Optional[datetime]) -> Optional[str]:
    """UTC ISO 8601 without sub-second digits, e.g. 2012-03-19T07:22:00Z."""
    if value is None:
        return None
    return as_utc(value).replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def _format_date(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    # fromisoformat only accepts a trailing Z from Python 3.11 on
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(value))


@dataclass
class ExecutionOutcome:
    """Outcome the test engine attaches to a flat step after running it."""
    passed: bool
    reason_phrase: str = ""
    duration_ms: float = 0.0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def outcome(self) -> str:
        """Azure outcome name."""
        return "Passed" if self.passed else "Failed"

    def to_dict(self) -> dict:
        return {
            "passed": self.passed,
            "reasonPhrase": self.reason_phrase,
            "durationMs": self.duration_ms,
            "startedAt": _format_date(self.started_at),
            "completedAt": _format_date(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionOutcome":
        return cls(
            passed=bool(data["passed"]),
            reason_phrase=data.get("reasonPhrase") or "",
            duration_ms=float(data.get("durationMs") or 0.0),
            started_at=_parse_date(data.get("startedAt")),
            completed_at=_parse_date(data.get("completedAt")),
        )


@dataclass
class FlatStep:
    """
    A single executable step with its stable addressing strings.

    ``action_path`` is 8 hex chars for a top level step and 16 for a group member.
    """
    action_path: str
    step_identifier: str
    action: str
    expected_results: List[str] = field(default_factory=list)
    group_context: Optional[GroupContext] = None
    outcome: Optional[ExecutionOutcome] = None

    @property
    def is_group_member(self) -> bool:
        return self.group_context is not None

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {
            "actionPath": self.action_path,
            "stepIdentifier": self.step_identifier,
            "action": self.action,
            "expectedResults": list(self.expected_results),
        }
        if self.group_context:
            data["groupContext"] = self.group_context.to_dict()
        if self.outcome:
            data["outcome"] = self.outcome.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "FlatStep":
        context = data.get("groupContext")
        outcome = data.get("outcome")
        return cls(
            action_path=data["actionPath"],
            step_identifier=str(data["stepIdentifier"]),
            action=data.get("action", ""),
            expected_results=list(data.get("expectedResults") or []),
            group_context=GroupContext.from_dict(context) if context else None,
            outcome=ExecutionOutcome.from_dict(outcome) if outcome else None,
        )


@dataclass(frozen=True)
class GroupModel:
    """Shared-steps reference carried by a group header row."""
    group_id: int
    revision: int

    def to_dict(self) -> dict:
        return {"id": self.group_id, "revision": self.revision}


@dataclass
class ResultRow:
    """One action result of a test iteration, as submitted to Azure."""
    action_path: str
    step_identifier: str
    outcome: Optional[ExecutionOutcome] = None
    group_model: Optional[GroupModel] = None

    @property
    def is_header(self) -> bool:
        return self.group_model is not None

    def to_dict(self, iteration_id: int = 1) -> dict:
        data: Dict[str, Any] = {
            "actionPath": self.action_path,
            "stepIdentifier": self.step_identifier,
            "iterationId": iteration_id,
        }
        if self.group_model:
            data["sharedStepModel"] = self.group_model.to_dict()
        if self.outcome:
            data["outcome"] = self.outcome.outcome
            data["errorMessage"] = "" if self.outcome.passed else self.outcome.reason_phrase
            data["durationInMs"] = self.outcome.duration_ms
            data["startedDate"] = azure_date(self.outcome.started_at)
            data["completedDate"] = azure_date(self.outcome.completed_at)
        return data


@dataclass
class TestCase:
    """A pulled test case: work item metadata plus its flattened steps."""
    __test__ = False  # not a pytest test class

    key: str
    title: str = ""
    priority: str = "2"
    steps: List[FlatStep] = field(default_factory=list)
    data_source: List[Dict[str, str]] = field(default_factory=list)
    invalid: bool = False

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "title": self.title,
            "priority": self.priority,
            "totalSteps": self.total_steps,
            "invalid": self.invalid,
            "steps": [step.to_dict() for step in self.steps],
            "dataSource": self.data_source,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TestCase":
        return cls(
            key=str(data.get("key", "")),
            title=data.get("title", ""),
            priority=str(data.get("priority", "2")),
            steps=[FlatStep.from_dict(step) for step in data.get("steps") or []],
            data_source=list(data.get("dataSource") or []),
            invalid=bool(data.get("invalid", False)),
        )
