import re
from typing import Literal, Optional, Sequence

from hercules_device.core.snapshot import SnapshotNode

FindLocator = Literal["any", "text", "label", "value", "role", "id"]

LOCATORS = ("any", "text", "label", "value", "role", "id")

EXACT_MATCH = 2
PARTIAL_MATCH = 1

_WHITESPACE = re.compile(r"\s+")
_XCUI_PREFIX = re.compile("XCUIElementType", re.IGNORECASE)


def normalize_text(value: str) -> str:
    return _WHITESPACE.sub(" ", value.strip().lower())


def normalize_role(value: str) -> str:
    """`XCUIElementTypeButton`, `AXButton` and `android.widget.Button` all become `button`."""
    normalized = value.strip()
    if not normalized:
        return ""
    last_segment = normalized.split(".")[-1]
    normalized = _XCUI_PREFIX.sub("", last_segment).lower()
    if normalized.startswith("ax"):
        normalized = normalized[2:]
    return normalized


def _score(normalized: str, query: str) -> int:
    if not normalized:
        return 0
    if normalized == query:
        return EXACT_MATCH
    if query in normalized:
        return PARTIAL_MATCH
    return 0


def match_text(value: Optional[str], query: str) -> int:
    return _score(normalize_text(value or ""), query)


def match_role(value: Optional[str], query: str) -> int:
    return _score(normalize_role(value or ""), query)


def match_node(node: SnapshotNode, locator: str, query: str) -> int:
    if locator == "role":
        return match_role(node.type, query)
    if locator == "label":
        return match_text(node.label, query)
    if locator == "value":
        return match_text(node.value, query)
    if locator == "id":
        return match_text(node.identifier, query)
    return max(
        match_text(node.label, query),
        match_text(node.value, query),
        match_text(node.identifier, query),
    )


def find_node_by_locator(
    nodes: Sequence[SnapshotNode],
    locator: str,
    query: str,
    require_rect: bool = False,
) -> Optional[SnapshotNode]:
    """
    Best node for `query` under `locator`.

    Exact matches (score 2) win over substring matches (score 1). The first exact
    match ends the scan; among equal substring scores the earliest node is kept.
    """
    normalized_query = normalize_text(query)
    if not normalized_query:
        return None
    best: Optional[SnapshotNode] = None
    best_score = 0
    for node in nodes:
        if require_rect and node.rect is None:
            continue
        score = match_node(node, locator, normalized_query)
        if score <= 0:
            continue
        if score > best_score:
            best, best_score = node, score
            if score >= EXACT_MATCH:
                break
    return best
