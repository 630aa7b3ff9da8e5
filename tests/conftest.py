import os
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

import pytest

os.environ["IS_TEST_ENV"] = "true"
os.environ["ENABLE_TELEMETRY"] = "false"

from hercules_device.config import SingletonConfigManager, set_global_conf  # noqa: E402
from hercules_device.core.device import DeviceInfo  # noqa: E402
from hercules_device.core.dispatch import Dispatcher  # noqa: E402

IOS_SIMULATOR = DeviceInfo(platform="ios", id="SIM-1", name="iPhone 15", kind="simulator")
ANDROID_EMULATOR = DeviceInfo(platform="android", id="emulator-5554", name="Pixel 8", kind="emulator")


# Fresh config per test, pointed at a temporary state directory
@pytest.fixture(autouse=True)
def global_conf(tmp_path: Any) -> Iterator[SingletonConfigManager]:
    SingletonConfigManager.reset_instance()
    conf = set_global_conf({"STATE_DIR": str(tmp_path / "state")}, ignore_env=True, override=True)
    yield conf
    SingletonConfigManager.reset_instance()


class FakeResolver:
    def __init__(self, device: DeviceInfo = IOS_SIMULATOR):
        self.device = device
        self.calls: List[Mapping[str, Any]] = []

    async def resolve_target_device(self, flags: Mapping[str, Any]) -> DeviceInfo:
        self.calls.append(dict(flags))
        return self.device


class FakeDispatcher(Dispatcher):
    """Records every call; `snapshot` answers with the queued payloads in order."""

    def __init__(self, snapshots: Optional[List[Dict[str, Any]]] = None):
        self.snapshots = list(snapshots or [])
        self.calls: List[Dict[str, Any]] = []
        self.stopped: List[str] = []
        self.fail_commands: Dict[str, Exception] = {}
        self.app_ids: Dict[str, str] = {}

    async def resolve_app(self, device: DeviceInfo, app: str) -> Optional[str]:
        if app not in self.app_ids:
            raise RuntimeError(f"unknown app {app}")
        return self.app_ids[app]

    async def dispatch_command(
        self,
        device: DeviceInfo,
        command: str,
        positionals: Sequence[str],
        out: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        self.calls.append(
            {"device": device.id, "command": command, "positionals": list(positionals), "context": dict(context or {})}
        )
        if command in self.fail_commands:
            raise self.fail_commands[command]
        if command == "snapshot":
            return self.snapshots.pop(0) if self.snapshots else {"nodes": [], "truncated": False}
        return None

    async def stop_interactive_runner(self, device_id: str) -> None:
        self.stopped.append(device_id)

    def commands(self) -> List[str]:
        return [call["command"] for call in self.calls]


def node(depth: int, type_: str, label: Optional[str] = None, rect: Optional[Dict[str, float]] = None, **extra: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {"depth": depth, "type": type_}
    if label is not None:
        data["label"] = label
    if rect is not None:
        data["rect"] = rect
    data.update(extra)
    return data


SETTINGS_SNAPSHOT = {
    "nodes": [
        node(0, "Application", "Settings", {"x": 0, "y": 0, "width": 390, "height": 844}),
        node(1, "NavigationBar", "Settings", {"x": 0, "y": 47, "width": 390, "height": 96}),
        node(1, "Button", "General", {"x": 16, "y": 200, "width": 358, "height": 44}),
        node(1, "TextField", None, {"x": 16, "y": 300, "width": 358, "height": 36}, identifier="search"),
        node(1, "StaticText", None, None, value="  Version 17.2  "),
    ],
    "truncated": False,
}

