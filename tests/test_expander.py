import asyncio
import unittest

from stepsync.core.expander import StepExpander, collect_references
from stepsync.core.models import GroupContext
from stepsync.core.parser import StepDocumentParser
from step_markup import compref_xml, step_xml, steps_xml

LOGIN_GROUP = steps_xml(step_xml(10, "Type user"), step_xml(11, "Type password"))
LOGOUT_GROUP = steps_xml(step_xml(20, "Open menu"), step_xml(21, "Click logout"))


def make_resolver(documents, calls=None):
    """Resolver over {group id: (markup, revision)}; unknown ids raise."""
    def fetch(group_id):
        if calls is not None:
            calls.append(group_id)
        if group_id not in documents:
            raise KeyError(f"work item {group_id} not found")
        return documents[group_id]
    return fetch


class TestStepExpander(unittest.TestCase):
    def setUp(self):
        self.parser = StepDocumentParser()
        self.expander = StepExpander(self.parser)

    def expand(self, markup, documents):
        return self.expander.expand(self.parser.parse(markup), make_resolver(documents))

    def test_document_without_references(self):
        markup = steps_xml(step_xml(1, "A"), step_xml(2, "B"), step_xml(16, "C"))
        nodes = self.parser.parse(markup)
        steps = self.expander.expand(nodes, make_resolver({}))

        self.assertEqual(len(steps), len(nodes))
        self.assertEqual([step.action_path for step in steps], ["00000001", "00000002", "00000010"])
        self.assertEqual([step.step_identifier for step in steps], ["1", "2", "16"])
        self.assertEqual([step.action for step in steps], ["A", "B", "C"])
        self.assertTrue(all(step.group_context is None for step in steps))

    def test_shared_reference_is_expanded(self):
        markup = steps_xml(step_xml(1, "Open"), compref_xml(2, 500))
        steps = self.expand(markup, {500: (LOGIN_GROUP, 3)})

        self.assertEqual(
            [step.action_path for step in steps],
            ["00000001", "000000020000000a", "000000020000000b"]
        )
        self.assertEqual([step.step_identifier for step in steps], ["1", "2;a", "2;b"])
        self.assertEqual(steps[1].group_context, GroupContext(500, 3, "00000002"))
        self.assertEqual(steps[2].action, "Type password")
        for step in steps[1:]:
            self.assertEqual(step.action_path[:8], step.group_context.group_path_prefix)

    def test_output_follows_document_order(self):
        markup = steps_xml(step_xml(1, "Open"), compref_xml(2, 500), step_xml(3, "Check"))
        steps = self.expand(markup, {500: (LOGIN_GROUP, 1)})

        self.assertEqual([step.step_identifier for step in steps], ["1", "2;a", "2;b", "3"])

    def test_inline_children_follow_group_members(self):
        markup = steps_xml(compref_xml(2, 500, step_xml(3, "Inline")), step_xml(4, "Last"))
        steps = self.expand(markup, {500: (LOGIN_GROUP, 1)})

        self.assertEqual([step.action_path for step in steps], [
            "000000020000000a", "000000020000000b", "00000003", "00000004"
        ])
        self.assertIsNone(steps[2].group_context)

    def test_failed_reference_is_skipped(self):
        markup = steps_xml(
            step_xml(1, "Open"), compref_xml(2, 500), compref_xml(3, 600), compref_xml(4, 700)
        )
        with self.assertLogs("stepsync.expander", level="WARNING"):
            steps = self.expand(markup, {500: (LOGIN_GROUP, 1), 700: (LOGOUT_GROUP, 1)})

        self.assertEqual([step.step_identifier for step in steps], ["1", "2;a", "2;b", "4;14", "4;15"])
        self.assertEqual(self.expander.skipped_references, [600])

    def test_revision_defaults_to_one(self):
        steps = self.expand(steps_xml(compref_xml(2, 500)), {500: (LOGIN_GROUP, 0)})
        self.assertEqual(steps[0].group_context.group_revision, 1)

    def test_same_group_placed_twice(self):
        markup = steps_xml(compref_xml(2, 500), compref_xml(5, 500))
        steps = self.expand(markup, {500: (LOGIN_GROUP, 1)})

        paths = [step.action_path for step in steps]
        self.assertEqual(paths, ["000000020000000a", "000000020000000b", "000000050000000a", "000000050000000b"])
        self.assertEqual(len(set(paths)), len(paths))
        self.assertEqual(self.expander.skipped_references, [])

    def test_reference_inside_shared_steps_is_skipped(self):
        outer = steps_xml(step_xml(10, "Outer"), compref_xml(2, 700))
        inner = steps_xml(step_xml(10, "Inner"))
        calls = []
        with self.assertLogs("stepsync.expander", level="WARNING"):
            steps = self.expander.expand(
                self.parser.parse(steps_xml(compref_xml(2, 500), step_xml(3, "After"))),
                make_resolver({500: (outer, 1), 700: (inner, 1)}, calls)
            )

        paths = [step.action_path for step in steps]
        self.assertEqual(paths, ["000000020000000a", "00000003"])
        self.assertEqual(len(set(paths)), len(paths))
        self.assertEqual(steps[0].action, "Outer")
        self.assertEqual(calls, [500])
        self.assertEqual(self.expander.skipped_references, [700])

    def test_self_referencing_group_terminates(self):
        looping = steps_xml(step_xml(10, "Before"), compref_xml(11, 500))
        with self.assertLogs("stepsync.expander", level="WARNING"):
            steps = self.expand(steps_xml(compref_xml(2, 500)), {500: (looping, 1)})

        self.assertEqual([step.step_identifier for step in steps], ["2;a"])
        self.assertEqual(self.expander.skipped_references, [500])

    def test_unparsable_group_contributes_no_steps(self):
        markup = steps_xml(step_xml(1, "Open"), compref_xml(2, 500))
        with self.assertLogs("stepsync.expander", level="WARNING"):
            steps = self.expand(markup, {500: ("<steps><step", 1)})

        self.assertEqual([step.step_identifier for step in steps], ["1"])

    def test_collect_references(self):
        nodes = self.parser.parse(steps_xml(
            compref_xml(2, 500, compref_xml(3, 600)), compref_xml(4, 500), step_xml(5, "x")
        ))
        self.assertEqual(collect_references(nodes), [500, 600])


class TestStepExpanderAsync(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.parser = StepDocumentParser()
        self.documents = {500: (LOGIN_GROUP, 2), 600: (LOGOUT_GROUP, 1)}
        self.markup = steps_xml(
            step_xml(1, "Open"), compref_xml(2, 500), step_xml(3, "Middle"), compref_xml(4, 600), compref_xml(6, 500)
        )

    async def test_matches_sequential_expansion_regardless_of_completion_order(self):
        delays = {500: 0.05, 600: 0.0}
        calls = []

        async def fetch(group_id):
            calls.append(group_id)
            await asyncio.sleep(delays[group_id])
            return self.documents[group_id]

        nodes = self.parser.parse(self.markup)
        concurrent = await StepExpander(self.parser).expand_async(nodes, fetch, max_workers=4)
        sequential = StepExpander(self.parser).expand(nodes, make_resolver(self.documents))

        self.assertEqual(concurrent, sequential)
        # Each distinct group is fetched once
        self.assertEqual(sorted(calls), [500, 600])

    async def test_fetches_are_bounded_by_max_workers(self):
        documents = {gid: (LOGIN_GROUP, 1) for gid in range(500, 506)}
        markup = steps_xml(*(compref_xml(index + 1, gid) for index, gid in enumerate(documents)))
        running = 0
        peak = 0

        async def fetch(group_id):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return documents[group_id]

        steps = await StepExpander(self.parser).expand_async(self.parser.parse(markup), fetch, max_workers=2)

        self.assertEqual(len(steps), 12)
        self.assertLessEqual(peak, 2)

    async def test_failed_fetch_skips_only_that_reference(self):
        async def fetch(group_id):
            if group_id == 600:
                raise ConnectionError("unreachable")
            return self.documents[group_id]

        expander = StepExpander(self.parser)
        steps = await expander.expand_async(self.parser.parse(self.markup), fetch)

        self.assertEqual(
            [step.step_identifier for step in steps],
            ["1", "2;a", "2;b", "3", "6;a", "6;b"]
        )
        self.assertEqual(expander.skipped_references, [600])

    async def test_references_inside_shared_steps_are_not_fetched(self):
        documents = {500: (steps_xml(step_xml(10, "Outer"), compref_xml(12, 700)), 1), 700: (LOGOUT_GROUP, 1)}
        calls = []

        async def fetch(group_id):
            calls.append(group_id)
            return documents[group_id]

        expander = StepExpander(self.parser)
        with self.assertLogs("stepsync.expander", level="WARNING"):
            steps = await expander.expand_async(self.parser.parse(steps_xml(compref_xml(2, 500))), fetch)

        self.assertEqual([step.step_identifier for step in steps], ["2;a"])
        self.assertEqual(calls, [500])
        self.assertEqual(expander.skipped_references, [700])

    async def test_cancellation_returns_nothing(self):
        started = asyncio.Event()

        async def fetch(group_id):
            started.set()
            await asyncio.Event().wait()

        task = asyncio.create_task(
            StepExpander(self.parser).expand_async(self.parser.parse(self.markup), fetch)
        )
        await started.wait()
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

if __name__ == '__main__':
    unittest.main()
