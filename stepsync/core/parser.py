import html
import logging
import re
import xml.etree.ElementTree as ET
from typing import List, Optional

from stepsync.config import LEAF_TAG, STEP_TEXT_TAG, ASSERTION_MARKERS
from stepsync.core.models import StepKind, StepNode

LINE_BREAK_PATTERN = re.compile(r"<\s*br\s*/?\s*>", re.IGNORECASE)
TAG_PATTERN = re.compile(r"<[^>]+>")
BLOCK_END_PATTERN = re.compile(r"</\s*(p|div)\s*>", re.IGNORECASE)
ASSERTION_PATTERN = re.compile(
    r"(?=\b(?:{})\b)".format("|".join(ASSERTION_MARKERS)), re.IGNORECASE
)


def _local_name(element: ET.Element) -> str:
    """Lower-cased tag name without namespace."""
    return element.tag.rsplit("}", 1)[-1].lower()


def clean_text(text: str) -> str:
    """
    Turns the formatted (HTML) text of a step cell into plain text.
    Line-break markers become newlines; other inline tags are dropped.
    """
    if not text:
        return ""
    text = LINE_BREAK_PATTERN.sub("\n", text)
    text = BLOCK_END_PATTERN.sub("\n", text)
    text = TAG_PATTERN.sub("", text)
    # Unescape only after stripping so encoded '<' in user text survives
    text = html.unescape(text).replace("\xa0", " ")
    text = re.sub(r"[ \t]+", " ", text)
    return "\n".join(line.strip() for line in text.split("\n")).strip()


def split_expected_results(text: str) -> List[str]:
    """
    Splits an expected-result cell into single assertions: one per line, and a new one
    wherever a verify/assert marker starts.
    """
    results = []
    for line in clean_text(text).split("\n"):
        for segment in ASSERTION_PATTERN.split(line):
            segment = segment.strip()
            if segment:
                results.append(segment)
    return results


class StepDocumentParser:
    """
    Parses the steps field of a test case (or shared steps) work item into step nodes.
    """
    def __init__(self):
        self.logger = logging.getLogger("stepsync.parser")

    def parse(self, markup: Optional[str]) -> List[StepNode]:
        """
        Returns the top level nodes in document order.
        Malformed or empty markup yields an empty list.
        """
        if not markup or not markup.strip():
            return []

        markup = markup.strip()
        if not markup.startswith("<"):
            # Whole document arrived entity encoded
            markup = LINE_BREAK_PATTERN.sub("\n", html.unescape(markup)).strip()

        try:
            root = ET.fromstring(markup)
        except ET.ParseError as e:
            self.logger.debug(f"Could not parse steps markup: {e}")
            return []

        # A bare <step>/<compref> is accepted as a one-node document
        if _local_name(root) != "steps":
            return self._parse_nodes([root])
        return self._parse_nodes(list(root))

    def _parse_nodes(self, elements: List[ET.Element]) -> List[StepNode]:
        nodes = []
        for element in elements:
            name = _local_name(element)
            if name == STEP_TEXT_TAG or name == "description":
                continue
            if name == LEAF_TAG:
                nodes.append(self._parse_leaf(element))
            else:
                nodes.append(self._parse_reference(element))
        return nodes

    def _parse_leaf(self, element: ET.Element) -> StepNode:
        cells = [
            "".join(child.itertext())
            for child in element.iter()
            if _local_name(child) == STEP_TEXT_TAG
        ]
        action = clean_text(cells[0]) if len(cells) > 0 else ""
        expected = split_expected_results(cells[1]) if len(cells) > 1 else []

        return StepNode(
            kind=StepKind.LEAF,
            placement_id=self._int_attribute(element, "id"),
            action=action,
            expected_results=expected,
        )

    def _parse_reference(self, element: ET.Element) -> StepNode:
        return StepNode(
            kind=StepKind.SHARED_REFERENCE,
            placement_id=self._int_attribute(element, "id"),
            ref_id=self._int_attribute(element, "ref"),
            inline_children=self._parse_nodes(list(element)),
        )

    def _int_attribute(self, element: ET.Element, name: str) -> int:
        value = element.get(name)
        try:
            return int(value)
        except (TypeError, ValueError):
            self.logger.warning(
                f"<{_local_name(element)}> has invalid '{name}' attribute {value!r}, using 0"
            )
            return 0
