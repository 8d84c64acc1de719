import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

from stepsync.config import MAX_WORKERS
from stepsync.core.action_path import (
    encode_group_prefix,
    encode_leaf,
    encode_member_identifier,
    encode_member_path,
    parse_hex,
)
from stepsync.core.models import FlatStep, GroupContext, StepKind, StepNode
from stepsync.core.parser import StepDocumentParser

# group id -> (steps markup, revision)
GroupMarkup = Tuple[str, int]
GroupResolver = Callable[[int], GroupMarkup]
AsyncGroupResolver = Callable[[int], Awaitable[GroupMarkup]]

# (node, enclosing group or None)
WorkEntry = Tuple[StepNode, Optional[GroupContext]]


class ReferenceResolutionFailure(Exception):
    """Shared steps referenced by a test case could not be fetched or parsed."""


def collect_references(nodes: Iterable[StepNode]) -> List[int]:
    """Distinct shared-steps ids referenced by ``nodes`` (inline children included), in order."""
    found: List[int] = []
    stack = list(nodes)[::-1]
    while stack:
        node = stack.pop()
        if node.kind == StepKind.SHARED_REFERENCE:
            if node.ref_id not in found:
                found.append(node.ref_id)
            stack.extend(reversed(node.inline_children))
    return found


class StepExpander:
    """
    Flattens a parsed steps document into an ordered list of flat steps, replacing each
    shared-steps reference by the steps of the referenced work item.
    """
    def __init__(self, parser: Optional[StepDocumentParser] = None):
        self.parser = parser or StepDocumentParser()
        self.logger = logging.getLogger("stepsync.expander")
        # Group ids whose subtree was dropped during the last expansion
        self.skipped_references: List[int] = []

    def expand(self, top_level: List[StepNode], fetch_group_markup: GroupResolver) -> List[FlatStep]:
        """
        Returns the flat steps in document order. A reference that cannot be resolved
        contributes no steps; its siblings are still expanded. References found inside
        a shared steps document are skipped.
        """
        self.skipped_references = []
        steps: List[FlatStep] = []
        queue = deque((node, None) for node in top_level)

        while queue:
            node, context = queue.popleft()
            if node.is_leaf:
                steps.append(self._to_flat_step(node, context))
                continue

            # Expanded nodes take the reference's place at the head of the queue
            expanded = self._expand_reference(node, context, fetch_group_markup)
            queue.extendleft(reversed(expanded))

        self.logger.debug(f"Expanded {len(top_level)} node(s) into {len(steps)} step(s)")
        return steps

    def expand_markup(self, markup: str, fetch_group_markup: GroupResolver) -> List[FlatStep]:
        return self.expand(self.parser.parse(markup), fetch_group_markup)

    async def expand_async(
        self,
        top_level: List[StepNode],
        fetch_group_markup: AsyncGroupResolver,
        max_workers: int = MAX_WORKERS,
    ) -> List[FlatStep]:
        """
        Fetches every referenced shared steps document concurrently (at most
        ``max_workers`` at a time), then assembles the flat steps in document order.
        Cancellation propagates; nothing partial is returned.
        """
        cache: Dict[int, Union[GroupMarkup, Exception]] = {}
        semaphore = asyncio.Semaphore(max(1, max_workers))

        async def fetch(group_id: int) -> None:
            async with semaphore:
                try:
                    cache[group_id] = await fetch_group_markup(group_id)
                except Exception as e:
                    cache[group_id] = e

        await asyncio.gather(*(fetch(group_id) for group_id in collect_references(top_level)))

        def resolve(group_id: int) -> GroupMarkup:
            entry = cache[group_id]
            if isinstance(entry, Exception):
                raise entry
            return entry

        return self.expand(top_level, resolve)

    def _expand_reference(
        self,
        node: StepNode,
        context: Optional[GroupContext],
        fetch_group_markup: GroupResolver,
    ) -> List[WorkEntry]:
        group_id = node.ref_id
        if context is not None:
            # Member paths have two components only
            self.logger.warning(
                f"Shared steps {context.group_id} reference shared steps {group_id}, skipping"
            )
            self.skipped_references.append(group_id)
            return []

        try:
            markup, revision = fetch_group_markup(group_id)
            members = self.parser.parse(markup)
        except Exception as e:
            failure = ReferenceResolutionFailure(f"shared steps {group_id}: {e}")
            self.logger.warning(f"Skipping placement {node.placement_id}: {failure}")
            self.skipped_references.append(group_id)
            return []

        if not members:
            self.logger.warning(f"Shared steps {group_id} have no steps")

        group = GroupContext(
            group_id=group_id,
            group_revision=revision or 1,
            group_path_prefix=encode_group_prefix(node.placement_id),
        )

        work: List[WorkEntry] = [(member, group) for member in members]
        work.extend((child, context) for child in node.inline_children)
        return work

    def _to_flat_step(self, node: StepNode, context: Optional[GroupContext]) -> FlatStep:
        if context is None:
            action_path = encode_leaf(node.placement_id)
            identifier = str(node.placement_id)
        else:
            action_path = encode_member_path(context.group_path_prefix, node.placement_id)
            identifier = encode_member_identifier(
                parse_hex(context.group_path_prefix), node.placement_id
            )

        return FlatStep(
            action_path=action_path,
            step_identifier=identifier,
            action=node.action,
            expected_results=list(node.expected_results),
            group_context=context,
        )
