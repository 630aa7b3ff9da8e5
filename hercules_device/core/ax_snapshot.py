"""
AX snapshot backend for iOS simulators.

Runs the `axsnapshot` helper (Swift, macOS accessibility API) against the
Simulator app and decodes its JSON output into a raw accessibility tree.
"""

import json
import os
from dataclasses import dataclass, replace
from typing import Any, List, Optional

import aiofiles
from hercules_device.config import get_global_conf
from hercules_device.core.device import DeviceInfo
from hercules_device.core.errors import AppError, ErrorCode
from hercules_device.core.frame_normalizer import normalize
from hercules_device.core.retry import RetryPolicy, with_retry
from hercules_device.core.snapshot import RawAccessibilityNode, Rect, SnapshotNode
from hercules_device.utils.exec_helper import CmdResult, run_cmd
from hercules_device.utils.logger import logger

TRANSIENT_MARKERS = ("could not find ios app content", "timeout")

PERMISSION_HINT = (
    " Enable Accessibility for your terminal in System Settings > Privacy & Security > Accessibility,"
    " or use snapshot_backend=appium (slower snapshots through XCUITest)."
)
EMPTY_CONTENT_HINT = " AX snapshot sometimes caches empty content. Try restarting the Simulator app."


@dataclass(frozen=True)
class CapturedTree:
    tree: RawAccessibilityNode
    origin_frame: Optional[Rect] = None


def find_project_root(start: Optional[str] = None) -> str:
    current = os.path.abspath(start or os.getcwd())
    for _ in range(6):
        if os.path.exists(os.path.join(current, "setup.py")):
            return current
        current = os.path.dirname(current)
    return os.path.abspath(start or os.getcwd())


async def ensure_ax_snapshot_binary(override: Optional[str] = None, project_root: Optional[str] = None) -> str:
    """
    Locate the helper: explicit override, packaged copy, local build. Builds it
    with `swift build` when none of them exist.
    """
    root = project_root or find_project_root()
    package_dir = os.path.join(root, "ios-runner", "AXSnapshot")

    override = override or get_global_conf().get_ax_snapshot_binary()
    if override and os.path.exists(override):
        return override
    packaged_path = os.path.join(root, "dist", "bin", "axsnapshot")
    if os.path.exists(packaged_path):
        return packaged_path
    binary_path = os.path.join(package_dir, ".build", "release", "axsnapshot")
    if os.path.exists(binary_path):
        return binary_path

    logger.info(f"Building AX snapshot helper in {package_dir}")
    result = await run_cmd("swift", ["build", "-c", "release"], cwd=package_dir if os.path.isdir(package_dir) else None, allow_failure=True)
    if result.exit_code != 0 or not os.path.exists(binary_path):
        raise AppError(
            ErrorCode.COMMAND_FAILED,
            "Failed to build AX snapshot tool",
            {"stderr": result.stderr, "stdout": result.stdout},
        )
    return binary_path


def ax_hint_from_stderr(stderr_text: str) -> str:
    lower = stderr_text.lower()
    if "accessibility permission" in lower:
        return PERMISSION_HINT
    if "could not find ios app content" in lower:
        return EMPTY_CONTENT_HINT
    return ""


def is_retryable_ax_error(stderr_text: str) -> bool:
    lower = stderr_text.lower()
    return any(marker in lower for marker in TRANSIENT_MARKERS)


def is_retryable_error(err: BaseException, attempt: int) -> bool:
    return isinstance(err, AppError) and err.code == ErrorCode.COMMAND_FAILED and err.retryable


async def append_ax_trace(trace_log_path: str, result: CmdResult) -> None:
    header = f"\n[axsnapshot] exit={result.exit_code} stdoutBytes={len(result.stdout)} stderrBytes={len(result.stderr)}\n"
    async with aiofiles.open(trace_log_path, "a", encoding="utf-8") as f:
        await f.write(header)
        if result.stderr:
            await f.write(f"{result.stderr}\n")
        if result.exit_code != 0 and result.stdout:
            await f.write(f"{result.stdout}\n")


def decode_ax_payload(stdout: str) -> CapturedTree:
    """The helper prints either a bare root node or `{"root": ..., "windowFrame": ...}`."""
    try:
        payload: Any = json.loads(stdout)
        if isinstance(payload, dict) and "root" in payload:
            if not payload["root"]:
                raise ValueError("AX snapshot missing root")
            window_frame = payload.get("windowFrame")
            return CapturedTree(
                tree=RawAccessibilityNode.from_dict(payload["root"]),
                origin_frame=Rect.from_dict(window_frame) if window_frame else None,
            )
        return CapturedTree(tree=RawAccessibilityNode.from_dict(payload))
    except (ValueError, TypeError, KeyError) as e:
        raise AppError(ErrorCode.COMMAND_FAILED, "Invalid AX snapshot JSON", {"error": str(e)}) from e


def default_policy() -> RetryPolicy:
    conf = get_global_conf()
    return RetryPolicy(
        attempts=conf.get_retry_attempts(),
        base_delay_ms=conf.get_retry_base_delay_ms(),
        max_delay_ms=conf.get_retry_max_delay_ms(),
        jitter=conf.get_retry_jitter(),
    )


async def capture_tree(
    device: DeviceInfo,
    trace_log_path: Optional[str] = None,
    policy: Optional[RetryPolicy] = None,
    binary: Optional[str] = None,
    timeout: Optional[float] = None,
) -> CapturedTree:
    if device.platform != "ios" or device.kind != "simulator":
        raise AppError(ErrorCode.UNSUPPORTED_OPERATION, "AX snapshot is only supported on iOS simulators")

    binary = binary or await ensure_ax_snapshot_binary()
    conf = get_global_conf()
    trace_log_path = trace_log_path or conf.get_ax_trace_log_path()
    timeout = timeout if timeout is not None else conf.get_ax_snapshot_timeout_s()
    # only failures flagged retryable by the helper's stderr are retried
    policy = replace(policy or default_policy(), should_retry=is_retryable_error)

    async def attempt() -> CmdResult:
        # a hung helper raises a retryable COMMAND_FAILED from run_cmd
        result = await run_cmd(binary, [], allow_failure=True, timeout=timeout)
        if trace_log_path:
            await append_ax_trace(trace_log_path, result)
        if result.exit_code != 0:
            hint = ax_hint_from_stderr(result.stderr)
            raise AppError(
                ErrorCode.COMMAND_FAILED,
                "AX snapshot failed",
                {
                    "stderr": f"{result.stderr}{hint}",
                    "stdout": result.stdout,
                    "retryable": is_retryable_ax_error(result.stderr),
                },
            )
        return result

    result = await with_retry(attempt, policy)
    return decode_ax_payload(result.stdout)


async def snapshot_ax(
    device: DeviceInfo,
    trace_log_path: Optional[str] = None,
    policy: Optional[RetryPolicy] = None,
) -> List[SnapshotNode]:
    captured = await capture_tree(device, trace_log_path=trace_log_path, policy=policy)
    nodes, _ = normalize(captured.tree, captured.origin_frame)
    logger.info(f"AX snapshot captured {len(nodes)} nodes from {device.name}")
    return nodes
