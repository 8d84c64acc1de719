import unittest
from stepsync.core.transformer import TestCaseTransformer
from step_markup import compref_xml, step_xml, steps_xml, work_item

LOGIN_GROUP = steps_xml(step_xml(10, "Type user"), step_xml(11, "Type password"))

class TestTestCaseTransformer(unittest.TestCase):
    def setUp(self):
        self.transformer = TestCaseTransformer()
        self.groups = {500: (LOGIN_GROUP, 3)}

    def fetch(self, group_id):
        return self.groups[group_id]

    def test_parse_data_source_xml(self):
        xml = (
            '<?xml version="1.0" encoding="utf-16"?>'
            '<NewDataSet><Table1><user>alice</user><role>admin</role></Table1>'
            '<Table1><user>bob</user><role></role></Table1></NewDataSet>'
        )
        expected = [
            {"user": "alice", "role": "admin"},
            {"user": "bob", "role": ""}
        ]
        result = self.transformer.parse_data_source(xml)
        self.assertEqual(result, expected)

    def test_parse_data_source_json(self):
        result = self.transformer.parse_data_source('[{"user": "alice", "age": 30}]')
        self.assertEqual(result, [{"user": "alice", "age": "30"}])

    def test_parse_data_source_unusable(self):
        self.assertEqual(self.transformer.parse_data_source(""), [])
        self.assertEqual(self.transformer.parse_data_source('{"sharedParameterDataSetIds": [1]}'), [])
        with self.assertLogs("stepsync.transformer", level="WARNING"):
            self.assertEqual(self.transformer.parse_data_source("<NewDataSet>"), [])

    def test_transform_test_case(self):
        item = work_item(
            42,
            steps_xml(step_xml(1, "Open login page"), compref_xml(2, 500)),
            title="  Test Login ",
            **{"Microsoft.VSTS.Common.Priority": 1}
        )
        result = self.transformer.transform(item, self.fetch)

        self.assertEqual(result.key, "42")
        self.assertEqual(result.title, "Test Login")
        self.assertEqual(result.priority, "1")
        self.assertFalse(result.invalid)
        self.assertEqual(result.total_steps, 3)
        self.assertEqual([step.step_identifier for step in result.steps], ["1", "2;a", "2;b"])

    def test_transform_defaults(self):
        result = self.transformer.transform({"id": 7, "fields": {}}, self.fetch)

        self.assertEqual(result.key, "7")
        self.assertEqual(result.priority, "2")
        self.assertEqual(result.steps, [])
        self.assertEqual(result.data_source, [])

    def test_missing_shared_steps_mark_case_invalid(self):
        item = work_item(43, steps_xml(step_xml(1, "Open"), compref_xml(2, 999)))
        with self.assertLogs("stepsync.transformer", level="WARNING") as logs:
            result = self.transformer.transform(item, self.fetch)

        self.assertTrue(result.invalid)
        self.assertEqual(result.total_steps, 1)
        self.assertIn("999", logs.output[0])

class TestTestCaseTransformerAsync(unittest.IsolatedAsyncioTestCase):
    async def test_transform_async(self):
        async def fetch(group_id):
            return LOGIN_GROUP, 1

        item = work_item(42, steps_xml(compref_xml(2, 500), step_xml(3, "Check")))
        result = await TestCaseTransformer().transform_async(item, fetch, max_workers=2)

        self.assertEqual([step.action_path for step in result.steps], [
            "000000020000000a", "000000020000000b", "00000003"
        ])

if __name__ == '__main__':
    unittest.main()
