"""Plain-text rendering of snapshot payloads for terminals and logs."""

import json
import re
from typing import Any, Dict, List, Mapping

ROLE_NAMES = {
    "application": "application",
    "navigationbar": "navigation-bar",
    "tabbar": "tab-bar",
    "button": "button",
    "link": "link",
    "cell": "cell",
    "statictext": "text",
    "textfield": "text-field",
    "textview": "text-view",
    "switch": "switch",
    "slider": "slider",
    "image": "image",
    "table": "list",
    "collectionview": "collection",
    "searchfield": "search",
    "segmentedcontrol": "segmented-control",
}


def format_role(node_type: str) -> str:
    normalized = re.sub("XCUIElementType", "", node_type, flags=re.IGNORECASE).lower()
    return ROLE_NAMES.get(normalized, normalized or "element")


def _format_line(node: Mapping[str, Any]) -> str:
    depth = max(0, int(node.get("depth") or 0))
    indent = "  " * depth
    label = ""
    for key in ("label", "value", "identifier"):
        text = (node.get(key) or "").strip()
        if text:
            label = text
            break
    role = format_role(node.get("type") or "Element")
    ref = f"@{node['ref']}" if node.get("ref") else ""
    rect = node.get("rect")
    rect_text = ""
    if rect:
        rect_text = f" [{round(rect['x'])},{round(rect['y'])} {round(rect['width'])}x{round(rect['height'])}]"
    flags: List[str] = []
    if node.get("hittable"):
        flags.append("hittable")
    if node.get("enabled") is False:
        flags.append("disabled")
    flag_text = f" ({', '.join(flags)})" if flags else ""
    text_part = f' "{label}"' if label else ""
    return f"{indent}{ref} {role}{text_part}{rect_text}{flag_text}".rstrip()


def format_snapshot_text(data: Dict[str, Any], raw: bool = False) -> str:
    """
    Render `{nodes, truncated}` one node per line, indented by depth:

        Snapshot: 3 nodes
        @e0 application "Settings" [0,0 390x844]
          @e1 button "General" [16,120 358x44] (hittable)
    """
    nodes = data.get("nodes") or []
    truncated = bool(data.get("truncated"))
    header = f"Snapshot: {len(nodes)} nodes{' (truncated)' if truncated else ''}"
    if not nodes:
        return f"{header}\n"
    if raw:
        lines = [json.dumps(node) for node in nodes]
    else:
        lines = [_format_line(node) for node in nodes]
    return header + "\n" + "\n".join(lines) + "\n"
