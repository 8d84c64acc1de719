import json
import logging
import xml.etree.ElementTree as ET
from typing import Dict, List, Any, Optional

from stepsync.config import (
    FIELD_MAPPING,
    DEFAULT_PRIORITY,
    MAX_WORKERS,
)
from stepsync.core.expander import AsyncGroupResolver, GroupResolver, StepExpander
from stepsync.core.models import FlatStep, TestCase

class TestCaseTransformer:
    """
    Transforms raw Azure DevOps test case work items into pulled test cases
    with flattened, addressable steps.
    """
    __test__ = False  # not a pytest test class

    def __init__(self, expander: Optional[StepExpander] = None):
        self.expander = expander or StepExpander()
        self.logger = logging.getLogger("stepsync.transformer")

    def parse_data_source(self, data_source: str) -> List[Dict[str, str]]:
        """
        Transforms the local data source field (DataSet XML or a JSON list of rows)
        into a list of rows.
        """
        if not data_source or not data_source.strip():
            return []

        data_source = data_source.replace(' encoding="utf-16"', "").strip()

        if data_source.startswith("<"):
            try:
                root = ET.fromstring(data_source)
            except ET.ParseError as e:
                self.logger.warning(f"Could not parse data source: {e}")
                return []
            # DataSet layout: <NewDataSet><Table1><col>value</col>...</Table1>...</NewDataSet>
            rows = []
            for table_row in root:
                if table_row.tag.endswith("schema"):
                    continue
                row = {column.tag.rsplit("}", 1)[-1]: (column.text or "") for column in table_row}
                if row:
                    rows.append(row)
            return rows

        try:
            data = json.loads(data_source)
        except ValueError as e:
            self.logger.warning(f"Could not parse data source: {e}")
            return []
        if isinstance(data, list):
            return [{str(k): "" if v is None else str(v) for k, v in row.items()} for row in data if isinstance(row, dict)]
        return []

    def _base_case(self, work_item: Dict[str, Any]) -> TestCase:
        test_case = TestCase(key=str(work_item.get("id", "")), priority=DEFAULT_PRIORITY)
        fields = work_item.get("fields") or {}

        for field_name, key in FIELD_MAPPING.items():
            value = fields.get(field_name)
            if value is None or (isinstance(value, str) and not value.strip()):
                continue

            if key == "data_source":
                test_case.data_source = self.parse_data_source(value)
            elif key == "priority":
                test_case.priority = str(value)
            elif key == "title":
                test_case.title = str(value).strip()
        return test_case

    def _steps_markup(self, work_item: Dict[str, Any]) -> str:
        fields = work_item.get("fields") or {}
        for field_name, key in FIELD_MAPPING.items():
            if key == "steps":
                return fields.get(field_name) or ""
        return ""

    def _finish(self, test_case: TestCase, steps: List[FlatStep]) -> TestCase:
        test_case.steps = steps
        if self.expander.skipped_references:
            test_case.invalid = True
            self.logger.warning(
                f"Test case {test_case.key} is invalid: shared steps "
                f"{self.expander.skipped_references} could not be expanded "
                f"({test_case.total_steps} step(s) kept)"
            )
        return test_case

    def transform(self, work_item: Dict[str, Any], fetch_group_markup: GroupResolver) -> TestCase:
        """
        Constructs the pulled test case, resolving shared steps through
        ``fetch_group_markup``.
        """
        test_case = self._base_case(work_item)
        steps = self.expander.expand_markup(self._steps_markup(work_item), fetch_group_markup)
        return self._finish(test_case, steps)

    async def transform_async(
        self,
        work_item: Dict[str, Any],
        fetch_group_markup: AsyncGroupResolver,
        max_workers: int = MAX_WORKERS,
    ) -> TestCase:
        test_case = self._base_case(work_item)
        nodes = self.expander.parser.parse(self._steps_markup(work_item))
        steps = await self.expander.expand_async(nodes, fetch_group_markup, max_workers=max_workers)
        return self._finish(test_case, steps)
