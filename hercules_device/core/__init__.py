from hercules_device.core.errors import AppError, ErrorCode, as_app_error  # noqa: F401
from hercules_device.core.snapshot import (  # noqa: F401
    RawAccessibilityNode,
    Rect,
    SnapshotNode,
    SnapshotState,
    attach_refs,
    center_of_rect,
    find_node_by_ref,
    normalize_ref,
)
