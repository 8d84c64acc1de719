import json
import logging
from pathlib import Path
from typing import Generator, Dict, Any, List, Optional

from stepsync.config import STEPS_FIELD

class WorkItemReader:
    """
    Handles reading of Azure DevOps work item exports (JSON) with validation.
    The export holds test cases and the shared steps they reference.
    """
    def __init__(self, file_path: str):
        self.file_path = Path(file_path)
        self.logger = logging.getLogger("stepsync.reader")
        self._items: Optional[List[Dict[str, Any]]] = None

    def validate(self) -> None:
        """Validates that the file exists and is a file."""
        if not self.file_path.exists():
            raise FileNotFoundError(f"Work item export not found: {self.file_path}")
        if not self.file_path.is_file():
            raise IsADirectoryError(f"Path is not a file: {self.file_path}")
        self.logger.debug(f"File validated: {self.file_path}")

    def load(self) -> List[Dict[str, Any]]:
        """Loads (once) every work item of the export."""
        if self._items is None:
            try:
                with open(self.file_path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
            except Exception as e:
                self.logger.error(f"Error reading work item export: {e}")
                raise

            # Either a REST list response ({"count": n, "value": [...]}) or a bare list
            items = data.get("value", []) if isinstance(data, dict) else data
            self._items = [item for item in items if isinstance(item, dict) and "id" in item]
        return self._items

    def count_rows(self) -> int:
        """Counts the test cases (work items carrying steps) in the export."""
        try:
            return sum(1 for _ in self.read())
        except Exception as e:
            self.logger.error(f"Error counting work items: {e}")
            return 0

    def read(self, ids: Optional[List[int]] = None) -> Generator[Dict[str, Any], None, None]:
        """
        Yields test case work items, optionally restricted to ``ids``.
        Shared steps are read only through lookup().
        """
        for item in self.load():
            fields = item.get("fields") or {}
            if fields.get("System.WorkItemType", "Test Case") != "Test Case":
                continue
            if STEPS_FIELD not in fields:
                continue
            if ids and int(item["id"]) not in ids:
                continue
            yield item

    def lookup(self, work_item_id: int) -> Dict[str, Any]:
        """Returns any work item of the export by id."""
        for item in self.load():
            if int(item["id"]) == int(work_item_id):
                return item
        raise KeyError(f"Work item {work_item_id} is not in {self.file_path}")

    def fetch_group_markup(self, group_id: int):
        """Offline shared steps resolver: (steps markup, revision) from the export."""
        item = self.lookup(group_id)
        fields = item.get("fields") or {}
        return fields.get(STEPS_FIELD, ""), int(item.get("rev") or 1)
