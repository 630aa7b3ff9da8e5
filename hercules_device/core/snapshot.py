"""Snapshot data model and ref assignment/resolution.

A ref is `e<N>` where N is the node's position in the snapshot's node sequence.
Refs only mean something against the SnapshotState that produced them.
"""

import math
import re
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

REF_PATTERN = re.compile(r"^e\d+$")


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Rect":
        return cls(
            x=float(data["x"]),
            y=float(data["y"]),
            width=float(data["width"]),
            height=float(data["height"]),
        )

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    def translate(self, dx: float, dy: float) -> "Rect":
        return Rect(self.x + dx, self.y + dy, self.width, self.height)


@dataclass(frozen=True)
class RawAccessibilityNode:
    """One node of the platform tree as reported by the native helper."""

    role: Optional[str] = None
    subrole: Optional[str] = None
    label: Optional[str] = None
    value: Optional[str] = None
    identifier: Optional[str] = None
    frame: Optional[Rect] = None
    children: Tuple["RawAccessibilityNode", ...] = ()
    hittable: Optional[bool] = None
    enabled: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RawAccessibilityNode":
        if not isinstance(data, Mapping):
            raise ValueError(f"expected an object for node, got {type(data).__name__}")
        frame = data.get("frame")
        children = data.get("children") or []
        if not isinstance(children, list):
            raise ValueError("node children must be a list")
        return cls(
            role=_opt_str(data.get("role")),
            subrole=_opt_str(data.get("subrole")),
            label=_opt_str(data.get("label")),
            value=_opt_str(data.get("value")),
            identifier=_opt_str(data.get("identifier")),
            frame=Rect.from_dict(frame) if frame else None,
            children=tuple(cls.from_dict(child) for child in children),
        )


@dataclass(frozen=True)
class SnapshotNode:
    """Flattened, coordinate-normalized node. `ref` is set by attach_refs."""

    index: int
    depth: int
    type: Optional[str] = None
    label: Optional[str] = None
    value: Optional[str] = None
    identifier: Optional[str] = None
    rect: Optional[Rect] = None
    ref: Optional[str] = None
    hittable: Optional[bool] = None
    enabled: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], index: int = 0) -> "SnapshotNode":
        rect = data.get("rect")
        return cls(
            index=int(data.get("index", index)),
            depth=int(data.get("depth", 0)),
            type=_opt_str(data.get("type")),
            label=_opt_str(data.get("label")),
            value=_opt_str(data.get("value")),
            identifier=_opt_str(data.get("identifier")),
            rect=Rect.from_dict(rect) if rect else None,
            ref=_opt_str(data.get("ref")),
            hittable=data.get("hittable"),
            enabled=data.get("enabled"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape: None fields are left out."""
        out: Dict[str, Any] = {}
        if self.ref is not None:
            out["ref"] = self.ref
        out["index"] = self.index
        out["depth"] = self.depth
        for key in ("type", "label", "value", "identifier"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        if self.rect is not None:
            out["rect"] = self.rect.to_dict()
        if self.hittable is not None:
            out["hittable"] = self.hittable
        if self.enabled is not None:
            out["enabled"] = self.enabled
        return out


@dataclass(frozen=True)
class SnapshotState:
    nodes: Tuple[SnapshotNode, ...]
    truncated: bool = False
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> Dict[str, Any]:
        return {"nodes": [node.to_dict() for node in self.nodes], "truncated": self.truncated}


NodeLike = Union[SnapshotNode, Mapping[str, Any]]


def attach_refs(nodes: Iterable[NodeLike]) -> List[SnapshotNode]:
    """Return copies of `nodes` carrying `ref = "e" + position`, in the given order."""
    out: List[SnapshotNode] = []
    for position, node in enumerate(nodes):
        if not isinstance(node, SnapshotNode):
            node = SnapshotNode.from_dict(node, index=position)
        out.append(replace(node, ref=f"e{position}"))
    return out


def normalize_ref(text: Optional[str]) -> Optional[str]:
    """Accept `@e3`, `e3` or ` e3 `; anything else yields None."""
    if not text:
        return None
    candidate = text.strip()
    if candidate.startswith("@"):
        candidate = candidate[1:]
    if not REF_PATTERN.match(candidate):
        return None
    return candidate


def find_node_by_ref(nodes: Sequence[SnapshotNode], ref: str) -> Optional[SnapshotNode]:
    for node in nodes:
        if node.ref == ref:
            return node
    return None


def center_of_rect(rect: Rect) -> Tuple[int, int]:
    """Center point, halves rounded up."""
    return math.floor(rect.x + rect.width / 2 + 0.5), math.floor(rect.y + rect.height / 2 + 0.5)


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)
