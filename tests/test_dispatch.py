from typing import Any, List, Tuple

import pytest
from conftest import ANDROID_EMULATOR, IOS_SIMULATOR
from hercules_device.core.dispatch import PlatformDispatcher, default_backend, limit_nodes
from hercules_device.core.errors import AppError, ErrorCode
from hercules_device.core.snapshot import SnapshotNode
from hercules_device.utils.exec_helper import CmdResult
from selenium.common.exceptions import WebDriverException

ANDROID_SOURCE = """<hierarchy rotation="0">
  <android.widget.FrameLayout class="android.widget.FrameLayout" bounds="[0,0][1080,2400]">
    <android.widget.LinearLayout class="android.widget.LinearLayout" bounds="[0,0][1080,1200]">
      <android.widget.Button class="android.widget.Button" text="OK" bounds="[10,20][110,80]" clickable="true" />
    </android.widget.LinearLayout>
  </android.widget.FrameLayout>
</hierarchy>"""


class FakeManager:
    def __init__(self) -> None:
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self.fail_with: Exception = None

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if self.fail_with is not None:
            raise self.fail_with

    def create_session(self) -> None:
        self._record("create_session")

    def activate_app(self, app_id: str) -> None:
        self._record("activate_app", app_id)

    def terminate_app(self, app_id: str) -> bool:
        self._record("terminate_app", app_id)
        return True

    def perform_tap(self, x: int, y: int) -> None:
        self._record("perform_tap", x, y)

    def enter_text_at(self, x: int, y: int, text: str) -> None:
        self._record("enter_text_at", x, y, text)

    def type_text(self, text: str) -> None:
        self._record("type_text", text)

    def perform_swipe(self, *args: int) -> None:
        self._record("perform_swipe", *args)

    def scroll(self, direction: str) -> None:
        self._record("scroll", direction)

    def press_back(self) -> None:
        self._record("press_back")

    def press_home(self) -> None:
        self._record("press_home")

    def get_page_source(self) -> str:
        self._record("get_page_source")
        return ANDROID_SOURCE


@pytest.fixture
def manager() -> FakeManager:
    return FakeManager()


@pytest.fixture
def dispatcher(manager: FakeManager) -> PlatformDispatcher:
    return PlatformDispatcher(manager_factory=lambda device: manager)


@pytest.mark.asyncio
async def test_interaction_commands(dispatcher, manager) -> None:
    assert await dispatcher.dispatch_command(ANDROID_EMULATOR, "press", ["195", "222"]) == {"x": 195, "y": 222}
    assert await dispatcher.dispatch_command(ANDROID_EMULATOR, "fill", ["10", "20", "hello", "world"]) == {
        "x": 10,
        "y": 20,
        "text": "hello world",
    }
    await dispatcher.dispatch_command(ANDROID_EMULATOR, "type", ["abc"])
    await dispatcher.dispatch_command(ANDROID_EMULATOR, "swipe", ["1", "2", "3", "4"])
    await dispatcher.dispatch_command(ANDROID_EMULATOR, "scroll", ["down"])
    await dispatcher.dispatch_command(ANDROID_EMULATOR, "back", [])
    await dispatcher.dispatch_command(ANDROID_EMULATOR, "home", [])
    assert manager.calls == [
        ("perform_tap", (195, 222)),
        ("enter_text_at", (10, 20, "hello world")),
        ("type_text", ("abc",)),
        ("perform_swipe", (1, 2, 3, 4, 800)),
        ("scroll", ("down",)),
        ("press_back", ()),
        ("press_home", ()),
    ]


@pytest.mark.asyncio
async def test_open_and_close_use_resolved_app_id(dispatcher, manager) -> None:
    data = await dispatcher.dispatch_command(IOS_SIMULATOR, "open", ["Settings"], context={"app_bundle_id": "com.apple.Preferences"})
    assert data == {"app": "com.apple.Preferences"}
    data = await dispatcher.dispatch_command(IOS_SIMULATOR, "close", ["Settings"], context={"app_bundle_id": "com.apple.Preferences"})
    assert data == {"app": "com.apple.Preferences", "terminated": True}
    assert manager.calls == [
        ("create_session", ()),
        ("activate_app", ("com.apple.Preferences",)),
        ("terminate_app", ("com.apple.Preferences",)),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "command, positionals",
    [("teleport", []), ("press", ["x", "1"]), ("press", ["1"]), ("scroll", ["left"]), ("fill", ["1", "2"]), ("type", [])],
)
async def test_invalid_commands(dispatcher, command, positionals) -> None:
    with pytest.raises(AppError) as exc_info:
        await dispatcher.dispatch_command(ANDROID_EMULATOR, command, positionals)
    assert exc_info.value.code == ErrorCode.INVALID_ARGS


@pytest.mark.asyncio
async def test_driver_errors_become_command_failed(dispatcher, manager) -> None:
    manager.fail_with = WebDriverException("session gone")
    with pytest.raises(AppError) as exc_info:
        await dispatcher.dispatch_command(ANDROID_EMULATOR, "back", [])
    assert exc_info.value.code == ErrorCode.COMMAND_FAILED
    assert exc_info.value.message == "session gone"


@pytest.mark.asyncio
async def test_appium_snapshot_with_depth_and_limit(dispatcher, tmp_path) -> None:
    out = tmp_path / "snapshot.json"
    data = await dispatcher.dispatch_command(ANDROID_EMULATOR, "snapshot", [], out=str(out))
    assert [n["type"] for n in data["nodes"]] == [
        "hierarchy",
        "android.widget.FrameLayout",
        "android.widget.LinearLayout",
        "android.widget.Button",
    ]
    assert data["truncated"] is False
    assert data["nodes"][3]["rect"] == {"x": 10.0, "y": 20.0, "width": 100.0, "height": 60.0}
    assert out.exists()

    data = await dispatcher.dispatch_command(ANDROID_EMULATOR, "snapshot", [], context={"snapshot_depth": 1})
    assert len(data["nodes"]) == 2

    data = await dispatcher.dispatch_command(ANDROID_EMULATOR, "snapshot", [], context={"snapshot_max_nodes": 3})
    assert len(data["nodes"]) == 3
    assert data["truncated"] is True


@pytest.mark.asyncio
async def test_unknown_snapshot_backend(dispatcher) -> None:
    with pytest.raises(AppError) as exc_info:
        await dispatcher.dispatch_command(ANDROID_EMULATOR, "snapshot", [], context={"snapshot_backend": "ocr"})
    assert exc_info.value.code == ErrorCode.INVALID_ARGS


def test_default_backend() -> None:
    assert default_backend(IOS_SIMULATOR) == "ax"
    assert default_backend(ANDROID_EMULATOR) == "appium"


def test_limit_nodes_reindexes() -> None:
    nodes = [SnapshotNode(index=i, depth=d) for i, d in enumerate([0, 1, 2, 1])]
    data = limit_nodes(nodes, max_depth=1, max_nodes=10)
    assert [(n["index"], n["depth"]) for n in data["nodes"]] == [(0, 0), (1, 1), (2, 1)]


@pytest.mark.asyncio
async def test_resolve_app(dispatcher, monkeypatch) -> None:
    listapps = """{
    "com.example.Notes" =     {
        ApplicationType = User;
        CFBundleDisplayName = "My Notes";
        CFBundleIdentifier = "com.example.Notes";
    };
}"""

    async def fake_run_cmd(cmd, args, **kwargs):
        return CmdResult(stdout=listapps, stderr="", exit_code=0)

    monkeypatch.setattr("hercules_device.core.dispatch.run_cmd", fake_run_cmd)
    assert await dispatcher.resolve_app(IOS_SIMULATOR, "settings") == "com.apple.Preferences"
    assert await dispatcher.resolve_app(IOS_SIMULATOR, "com.foo.bar") == "com.foo.bar"
    assert await dispatcher.resolve_app(IOS_SIMULATOR, "my notes") == "com.example.Notes"
    assert await dispatcher.resolve_app(ANDROID_EMULATOR, "com.android.settings") == "com.android.settings"
    with pytest.raises(AppError):
        await dispatcher.resolve_app(IOS_SIMULATOR, "Unknown")
