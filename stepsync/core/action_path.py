"""
Action path and step identifier encoding.

Azure correlates a test step between its definition and its iteration results through
two strings:

- the action path, made of 8-char zero-padded lowercase hex components: one component
  for a top level step, two (group placement + member) for a step inside shared steps;
- the step identifier, the decimal step id for a top level step, or
  ``"{placement:x};{member:x}"`` (unpadded) for a shared-steps member.

Both are derived from integer ids only, so the result phase can rebuild grouping
without the original steps document.
"""

import logging

logger = logging.getLogger("stepsync.action_path")

COMPONENT_WIDTH = 8
MAX_ID = 0xFFFFFFFF
LEAF_PATH_LENGTH = COMPONENT_WIDTH
MEMBER_PATH_LENGTH = COMPONENT_WIDTH * 2
IDENTIFIER_SEPARATOR = ";"


class EncodingDomainError(ValueError):
    """An id cannot be represented by one 8-char hex component."""


def _checked(value: int) -> int:
    if 0 <= value <= MAX_ID:
        return value
    clamped = 0 if value < 0 else MAX_ID
    error = EncodingDomainError(f"id {value} is outside 0..{MAX_ID:#x}")
    logger.warning(f"{error}; clamped to {clamped}")
    return clamped


def encode_leaf(step_id: int) -> str:
    """Lowercase hex of ``step_id`` left padded with zeros to 8 chars."""
    return format(_checked(int(step_id)), f"0{COMPONENT_WIDTH}x")


def encode_group_prefix(placement_id: int) -> str:
    """Path component of a shared-steps placement (same algorithm as a leaf)."""
    return encode_leaf(placement_id)


def encode_member_path(prefix: str, member_id: int) -> str:
    if len(prefix) != COMPONENT_WIDTH:
        raise ValueError(f"group prefix must be {COMPONENT_WIDTH} chars: {prefix!r}")
    return prefix + encode_leaf(member_id)


def encode_member_identifier(placement_id: int, member_id: int) -> str:
    return f"{_checked(int(placement_id)):x}{IDENTIFIER_SEPARATOR}{_checked(int(member_id)):x}"


def parse_hex(text: str) -> int:
    return int(text, 16)


def is_member_path(action_path: str) -> bool:
    return len(action_path) == MEMBER_PATH_LENGTH


def group_prefix_of(action_path: str) -> str:
    """First path component, i.e. the placement prefix of a member path."""
    return action_path[:COMPONENT_WIDTH]


def identifier_head(step_identifier: str) -> str:
    """Placement part of a member identifier (text before ``;``)."""
    return step_identifier.split(IDENTIFIER_SEPARATOR, 1)[0]
