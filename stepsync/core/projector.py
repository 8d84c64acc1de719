"""
Rebuilds Azure iteration action results from executed flat steps.

Only the action path and step identifier conventions are used; the steps document
is not available when results are pushed.
"""

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from stepsync.config import ITERATION_COMMENT
from stepsync.core.action_path import (
    is_member_path,
    group_prefix_of,
    identifier_head,
)
from stepsync.core.models import (
    ExecutionOutcome,
    FlatStep,
    GroupModel,
    ResultRow,
    TestCase,
    as_utc,
    azure_date,
)

StepWithOutcome = Union[FlatStep, Tuple[FlatStep, Optional[ExecutionOutcome]]]


def _aggregate(outcomes: List[ExecutionOutcome]) -> ExecutionOutcome:
    """Outcome of a shared-steps header: passed only when every member passed."""
    failed = [outcome for outcome in outcomes if not outcome.passed]
    started = [as_utc(outcome.started_at) for outcome in outcomes if outcome.started_at]
    completed = [as_utc(outcome.completed_at) for outcome in outcomes if outcome.completed_at]
    return ExecutionOutcome(
        passed=not failed,
        reason_phrase=failed[0].reason_phrase if failed else "",
        duration_ms=sum(outcome.duration_ms for outcome in outcomes),
        started_at=min(started) if started else None,
        completed_at=max(completed) if completed else None,
    )


class ResultProjector:
    """
    Projects executed flat steps into result rows: ungrouped steps map one to one,
    shared steps collapse into a header row followed by one detail row per member.
    """
    def __init__(self):
        self.logger = logging.getLogger("stepsync.projector")

    def project(self, steps: Iterable[StepWithOutcome]) -> List[ResultRow]:
        return self.repair(self.materialize(steps))

    def materialize(self, steps: Iterable[StepWithOutcome]) -> List[ResultRow]:
        """
        Pass 1: one detail row per executed step, preceded by a header row (at the
        member's own path) for the first executed member of every group placement.
        """
        rows: List[ResultRow] = []
        headers: Dict[str, ResultRow] = {}
        member_outcomes: Dict[str, List[ExecutionOutcome]] = {}

        for step, outcome in self._pairs(steps):
            if outcome is None:
                continue

            if step.is_group_member:
                context = step.group_context
                # Keyed by placement so a group placed twice gets two headers
                placement = context.group_path_prefix
                if placement not in headers:
                    header = ResultRow(
                        action_path=step.action_path,
                        step_identifier=step.step_identifier,
                        group_model=GroupModel(context.group_id, context.group_revision),
                    )
                    headers[placement] = header
                    member_outcomes[placement] = []
                    rows.append(header)
                member_outcomes[placement].append(outcome)

            rows.append(ResultRow(
                action_path=step.action_path,
                step_identifier=step.step_identifier,
                outcome=outcome,
            ))

        for placement, header in headers.items():
            header.outcome = _aggregate(member_outcomes[placement])

        self.logger.debug(f"Materialized {len(rows)} row(s), {len(headers)} group header(s)")
        return rows

    def repair(self, rows: Sequence[ResultRow]) -> List[ResultRow]:
        """
        Pass 2: truncates every group header to its placement (8-char path, identifier
        head) and keeps each group's detail rows right after it. Idempotent.
        """
        headers = [row for row in rows if row.is_header]
        if not headers:
            return list(rows)

        prefixes = {group_prefix_of(header.action_path) for header in headers}
        members: Dict[str, List[ResultRow]] = {prefix: [] for prefix in prefixes}
        for row in rows:
            if not row.is_header and is_member_path(row.action_path):
                prefix = group_prefix_of(row.action_path)
                if prefix in members:
                    members[prefix].append(row)

        repaired: List[ResultRow] = []
        for row in rows:
            if row.is_header:
                prefix = group_prefix_of(row.action_path)
                repaired.append(replace(
                    row,
                    action_path=prefix,
                    step_identifier=identifier_head(row.step_identifier),
                ))
                repaired.extend(members[prefix])
            elif is_member_path(row.action_path) and group_prefix_of(row.action_path) in members:
                # Emitted right after its header
                continue
            else:
                repaired.append(row)
        return repaired

    def build_iteration_details(
        self,
        rows: Sequence[ResultRow],
        iteration_id: int = 1,
        test_case: Optional[TestCase] = None,
    ) -> dict:
        """
        Azure test iteration payload for the given rows. With a test case, its data
        source values found in step text are reported as iteration parameters.
        """
        details = [row for row in rows if not row.is_header and row.outcome is not None]
        started = [as_utc(row.outcome.started_at) for row in details if row.outcome.started_at]
        completed = [as_utc(row.outcome.completed_at) for row in details if row.outcome.completed_at]

        iteration = {
            "id": iteration_id,
            "comment": ITERATION_COMMENT,
            "startedDate": _azure_date(min(started) if started else None),
            "completedDate": _azure_date(max(completed) if completed else None),
            "durationInMs": sum(row.outcome.duration_ms for row in details),
            "actionResults": [row.to_dict(iteration_id) for row in rows],
            "parameters": self.build_parameters(test_case, iteration_id) if test_case else [],
        }
        if details:
            passed = all(row.outcome.passed for row in details)
            iteration["outcome"] = "Passed" if passed else "Failed"
        return iteration

    def build_parameters(self, test_case: TestCase, iteration_id: int = 1) -> List[dict]:
        parameters = []
        for step in test_case.steps:
            text = "\n".join([step.action, *step.expected_results])
            for name, value in self._matching_parameters(text, test_case.data_source):
                parameters.append({
                    "actionPath": step.action_path,
                    "stepIdentifier": step.step_identifier,
                    "iterationId": iteration_id,
                    "parameterName": name,
                    "value": value,
                })
        return parameters

    @staticmethod
    def _matching_parameters(text: str, data_source: List[Dict[str, str]]) -> List[Tuple[str, str]]:
        found = []
        for row in data_source:
            for name, value in row.items():
                value = "" if value is None else str(value)
                if value and value in text and (name, value) not in found:
                    found.append((name, value))
        return found

    @staticmethod
    def _pairs(steps: Iterable[StepWithOutcome]):
        for item in steps:
            if isinstance(item, FlatStep):
                yield item, item.outcome
            else:
                yield item


def _azure_date(value: Optional[datetime]) -> str:
    """Azure date of ``value``, or of the current time when there is none."""
    return azure_date(value or datetime.now(timezone.utc))
