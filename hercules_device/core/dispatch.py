"""
Platform command dispatch.

`Dispatcher` is the seam the daemon talks to. `PlatformDispatcher` is the
default implementation: it drives Appium sessions for interaction and picks a
snapshot backend (the AX helper on iOS simulators, Appium page source
everywhere else).
"""

import asyncio
import json
import re
from dataclasses import replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
from xml.etree.ElementTree import ParseError

import aiofiles
from hercules_device.config import get_global_conf
from hercules_device.core.appium_manager import AppiumManager
from hercules_device.core.ax_snapshot import snapshot_ax
from hercules_device.core.device import DeviceInfo
from hercules_device.core.errors import AppError, ErrorCode
from hercules_device.core.frame_normalizer import normalize, parse_appium_source
from hercules_device.core.snapshot import SnapshotNode
from hercules_device.utils.exec_helper import run_cmd
from hercules_device.utils.logger import logger
from selenium.common.exceptions import WebDriverException

SNAPSHOT_BACKENDS = ("ax", "appium")

# display names of the stock simulator apps
IOS_APP_ALIASES = {
    "settings": "com.apple.Preferences",
    "safari": "com.apple.mobilesafari",
    "photos": "com.apple.mobileslideshow",
    "maps": "com.apple.Maps",
    "messages": "com.apple.MobileSMS",
    "calendar": "com.apple.mobilecal",
    "contacts": "com.apple.MobileAddressBook",
    "files": "com.apple.DocumentsApp",
    "health": "com.apple.Health",
    "reminders": "com.apple.reminders",
}

_LISTAPPS_ENTRY = re.compile(
    r'CFBundleDisplayName = "?(?P<name>[^";]+)"?;.*?CFBundleIdentifier = "?(?P<id>[^";]+)"?;',
    re.DOTALL,
)


class Dispatcher:
    """Interface used by the daemon for everything that touches a device."""

    async def resolve_app(self, device: DeviceInfo, app: str) -> Optional[str]:
        return None

    async def dispatch_command(
        self,
        device: DeviceInfo,
        command: str,
        positionals: Sequence[str],
        out: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def stop_interactive_runner(self, device_id: str) -> None:
        return None


def _int_arg(positionals: Sequence[str], index: int, name: str, command: str) -> int:
    try:
        return int(float(positionals[index]))
    except (IndexError, ValueError):
        raise AppError(ErrorCode.INVALID_ARGS, f"{command} requires numeric {name}")


def limit_nodes(nodes: List[SnapshotNode], max_depth: Optional[int], max_nodes: int) -> Dict[str, Any]:
    """Apply the depth filter and node cap, re-indexing what is kept."""
    if max_depth is not None:
        nodes = [node for node in nodes if node.depth <= max_depth]
    truncated = len(nodes) > max_nodes
    if truncated:
        nodes = nodes[:max_nodes]
    return {
        "nodes": [replace(node, index=position).to_dict() for position, node in enumerate(nodes)],
        "truncated": truncated,
    }


class PlatformDispatcher(Dispatcher):
    def __init__(self, manager_factory: Optional[Callable[[DeviceInfo], AppiumManager]] = None):
        self._manager_factory = manager_factory or AppiumManager.get_instance

    def manager_for(self, device: DeviceInfo) -> AppiumManager:
        return self._manager_factory(device)

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except WebDriverException as e:
            raise AppError(ErrorCode.COMMAND_FAILED, e.msg or str(e), {"error_type": e.__class__.__name__}) from e

    async def resolve_app(self, device: DeviceInfo, app: str) -> Optional[str]:
        """Map a display name to a bundle id. Android package names pass through unchanged."""
        app = app.strip()
        if not app:
            return None
        if device.platform != "ios" or "." in app:
            return app
        alias = IOS_APP_ALIASES.get(app.lower())
        if alias:
            return alias
        if device.kind != "simulator":
            raise AppError(ErrorCode.COMMAND_FAILED, f"Unknown app: {app}")
        result = await run_cmd("xcrun", ["simctl", "listapps", device.id], timeout=30)
        for match in _LISTAPPS_ENTRY.finditer(result.stdout):
            if match.group("name").strip().lower() == app.lower():
                return match.group("id").strip()
        raise AppError(ErrorCode.COMMAND_FAILED, f"Unknown app: {app}", {"device": device.id})

    async def dispatch_command(
        self,
        device: DeviceInfo,
        command: str,
        positionals: Sequence[str],
        out: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        context = context or {}
        logger.debug(f"Dispatching {command} {list(positionals)} to {device.platform} device {device.id}")

        if command == "snapshot":
            data = await self.snapshot(device, context)
            if out:
                async with aiofiles.open(out, "w", encoding="utf-8") as f:
                    await f.write(json.dumps(data, indent=2))
            return data

        manager = self.manager_for(device)
        if command == "open":
            await self._call(manager.create_session)
            app_id = context.get("app_bundle_id") or (positionals[0] if positionals else None)
            if app_id:
                await self._call(manager.activate_app, app_id)
                return {"app": app_id}
            return {}
        if command == "close":
            if not positionals:
                return {}
            app_id = context.get("app_bundle_id") or positionals[0]
            terminated = await self._call(manager.terminate_app, app_id)
            return {"app": app_id, "terminated": terminated}
        if command == "press":
            x = _int_arg(positionals, 0, "x", command)
            y = _int_arg(positionals, 1, "y", command)
            await self._call(manager.perform_tap, x, y)
            return {"x": x, "y": y}
        if command == "fill":
            x = _int_arg(positionals, 0, "x", command)
            y = _int_arg(positionals, 1, "y", command)
            text = " ".join(positionals[2:])
            if not text:
                raise AppError(ErrorCode.INVALID_ARGS, "fill requires text")
            await self._call(manager.enter_text_at, x, y, text)
            return {"x": x, "y": y, "text": text}
        if command == "type":
            text = " ".join(positionals)
            if not text:
                raise AppError(ErrorCode.INVALID_ARGS, "type requires text")
            await self._call(manager.type_text, text)
            return {"text": text}
        if command == "swipe":
            coords = [_int_arg(positionals, i, name, command) for i, name in enumerate(("x1", "y1", "x2", "y2"))]
            duration = _int_arg(positionals, 4, "duration", command) if len(positionals) > 4 else 800
            await self._call(manager.perform_swipe, *coords, duration)
            return {"from": coords[:2], "to": coords[2:], "duration": duration}
        if command == "scroll":
            direction = positionals[0] if positionals else ""
            if direction not in ("up", "down"):
                raise AppError(ErrorCode.INVALID_ARGS, "scroll requires up or down")
            await self._call(manager.scroll, direction)
            return {"direction": direction}
        if command == "back":
            await self._call(manager.press_back)
            return {}
        if command == "home":
            await self._call(manager.press_home)
            return {}
        raise AppError(ErrorCode.INVALID_ARGS, f"Unknown command: {command}")

    async def snapshot(self, device: DeviceInfo, context: Mapping[str, Any]) -> Dict[str, Any]:
        backend = context.get("snapshot_backend") or default_backend(device)
        if backend not in SNAPSHOT_BACKENDS:
            raise AppError(ErrorCode.INVALID_ARGS, f"Unknown snapshot backend: {backend}")

        if backend == "ax":
            nodes = await snapshot_ax(device, trace_log_path=context.get("trace_log_path"))
        else:
            source = await self._call(self.manager_for(device).get_page_source)
            try:
                tree = parse_appium_source(source)
            except ParseError as e:
                raise AppError(ErrorCode.COMMAND_FAILED, "Invalid Appium page source", {"error": str(e)}) from e
            nodes, _ = normalize(tree)

        depth = context.get("snapshot_depth")
        max_nodes = context.get("snapshot_max_nodes") or get_global_conf().get_snapshot_max_nodes()
        try:
            data = limit_nodes(nodes, int(depth) if depth is not None else None, int(max_nodes))
        except ValueError:
            raise AppError(ErrorCode.INVALID_ARGS, "snapshot_depth and snapshot_max_nodes must be integers")
        logger.info(f"Snapshot ({backend}) of {device.name}: {len(data['nodes'])} nodes, truncated={data['truncated']}")
        return data

    async def stop_interactive_runner(self, device_id: str) -> None:
        await asyncio.to_thread(AppiumManager.close_instance, device_id)


def default_backend(device: DeviceInfo) -> str:
    return "ax" if device.platform == "ios" and device.kind == "simulator" else "appium"
