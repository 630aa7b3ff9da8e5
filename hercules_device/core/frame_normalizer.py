"""
Flatten a raw accessibility tree into depth-annotated, window-relative nodes.

Coordinates reported by the macOS accessibility API are absolute screen points.
They are translated by the root (window) frame so refs resolve to points inside
the simulator screen. The window frame occasionally lags behind the content
frame; when the raw samples show the content was already window relative
(minimum x and y within 5px of zero) the translation is undone and the raw
coordinates are kept. Re-normalizing output that already went through the
add-back branch is therefore not a no-op.
"""

import math
import re
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional, Tuple

from hercules_device.core.snapshot import RawAccessibilityNode, Rect, SnapshotNode

NEAR_ZERO_TOLERANCE = 5

_ANDROID_BOUNDS = re.compile(r"\[(-?\d+),(-?\d+)\]\[(-?\d+),(-?\d+)\]")

_FlatEntry = Tuple[RawAccessibilityNode, int, Optional[Rect]]


def _flatten(root: RawAccessibilityNode, root_frame: Optional[Rect]) -> Tuple[List[_FlatEntry], Optional[Tuple[float, float]]]:
    """Pre-order walk returning (node, depth, translated frame) entries and the raw minimum (x, y)."""
    entries: List[_FlatEntry] = []
    min_x = math.inf
    min_y = math.inf
    stack: List[Tuple[RawAccessibilityNode, int]] = [(root, 0)]
    while stack:
        node, depth = stack.pop()
        frame = node.frame
        if frame is not None:
            min_x = min(min_x, frame.x)
            min_y = min(min_y, frame.y)
            if root_frame is not None:
                frame = frame.translate(-root_frame.x, -root_frame.y)
        entries.append((node, depth, frame))
        stack.extend((child, depth + 1) for child in reversed(node.children))
    sample = None if min_x == math.inf else (min_x, min_y)
    return entries, sample


def normalize(root: RawAccessibilityNode, origin_frame: Optional[Rect] = None) -> Tuple[List[SnapshotNode], Optional[Rect]]:
    """
    Returns the flat node list and the frame chosen as the coordinate origin
    (the root node's own frame, else `origin_frame`).
    """
    root_frame = root.frame or origin_frame
    entries, sample = _flatten(root, root_frame)

    add_back = (
        root_frame is not None
        and sample is not None
        and sample[0] <= NEAR_ZERO_TOLERANCE
        and sample[1] <= NEAR_ZERO_TOLERANCE
    )

    nodes: List[SnapshotNode] = []
    for index, (raw, depth, rect) in enumerate(entries):
        if add_back and rect is not None:
            rect = rect.translate(root_frame.x, root_frame.y)
        nodes.append(
            SnapshotNode(
                index=index,
                depth=depth,
                type=raw.subrole or raw.role,
                label=raw.label,
                value=raw.value,
                identifier=raw.identifier,
                rect=rect,
                hittable=raw.hittable,
                enabled=raw.enabled,
            )
        )
    return nodes, root_frame


# ─── APPIUM PAGE SOURCE ─────────────────────────────────────────────────────


def _bool_attr(attrib: Dict[str, str], key: str) -> Optional[bool]:
    if key not in attrib:
        return None
    return attrib[key].lower() == "true"


def _non_empty(value: Optional[str]) -> Optional[str]:
    return value if value else None


def _frame_from_attrib(attrib: Dict[str, str]) -> Optional[Rect]:
    # Android: bounds="[x1,y1][x2,y2]"
    bounds = attrib.get("bounds")
    if bounds:
        match = _ANDROID_BOUNDS.match(bounds)
        if match:
            x1, y1, x2, y2 = map(int, match.groups())
            return Rect(x1, y1, x2 - x1, y2 - y1)
        return None
    # iOS: x / y / width / height
    if all(key in attrib for key in ("x", "y", "width", "height")):
        try:
            return Rect(float(attrib["x"]), float(attrib["y"]), float(attrib["width"]), float(attrib["height"]))
        except ValueError:
            return None
    return None


def _node_from_element(elem: ET.Element) -> RawAccessibilityNode:
    attrib = dict(elem.attrib)
    is_android = "class" in attrib or "resource-id" in attrib or "content-desc" in attrib
    if is_android:
        return RawAccessibilityNode(
            role=_non_empty(attrib.get("class")) or elem.tag,
            label=_non_empty(attrib.get("content-desc")),
            value=_non_empty(attrib.get("text")),
            identifier=_non_empty(attrib.get("resource-id")),
            frame=_frame_from_attrib(attrib),
            children=tuple(_node_from_element(child) for child in elem),
            hittable=_bool_attr(attrib, "clickable"),
            enabled=_bool_attr(attrib, "enabled"),
        )
    return RawAccessibilityNode(
        role=_non_empty(attrib.get("type")) or elem.tag,
        label=_non_empty(attrib.get("label")),
        value=_non_empty(attrib.get("value")),
        identifier=_non_empty(attrib.get("name")),
        frame=_frame_from_attrib(attrib),
        children=tuple(_node_from_element(child) for child in elem),
        hittable=_bool_attr(attrib, "hittable") if "hittable" in attrib else _bool_attr(attrib, "accessible"),
        enabled=_bool_attr(attrib, "enabled"),
    )


def parse_appium_source(source: str) -> RawAccessibilityNode:
    """Parse Appium page source XML (UiAutomator2 or XCUITest) into a raw tree."""
    root = ET.fromstring(source)
    return _node_from_element(root)
