import copy

import pytest
from conftest import ANDROID_EMULATOR, SETTINGS_SNAPSHOT, FakeDispatcher, FakeResolver
from hercules_device.core.errors import AppError, ErrorCode
from hercules_device.core.snapshot import SnapshotState
from hercules_device.daemon.handler import RequestHandler
from hercules_device.daemon.protocol import DaemonRequest, ErrorResponse, OkResponse

TOKEN = "secret-token"


def request(command, *positionals, session="default", token=TOKEN, **flags) -> DaemonRequest:
    return DaemonRequest(token=token, session=session, command=command, positionals=list(positionals), flags=flags)


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher(snapshots=[copy.deepcopy(SETTINGS_SNAPSHOT) for _ in range(3)])


@pytest.fixture
def handler(dispatcher) -> RequestHandler:
    return RequestHandler(token=TOKEN, resolver=FakeResolver(), dispatcher=dispatcher)


async def ok(handler: RequestHandler, req: DaemonRequest) -> dict:
    response = await handler.handle(req)
    assert isinstance(response, OkResponse), response.to_dict()
    return response.data


async def error(handler: RequestHandler, req: DaemonRequest) -> AppError:
    response = await handler.handle(req)
    assert isinstance(response, ErrorResponse), response.to_dict()
    return response.error


@pytest.mark.asyncio
async def test_open_snapshot_click(handler, dispatcher) -> None:
    dispatcher.app_ids["Settings"] = "com.apple.Preferences"
    assert await ok(handler, request("open", "Settings", platform="ios")) == {"session": "default"}
    assert handler.sessions.get("default").app_bundle_id == "com.apple.Preferences"

    snapshot = await ok(handler, request("snapshot"))
    assert [n["ref"] for n in snapshot["nodes"]] == ["e0", "e1", "e2", "e3", "e4"]
    assert snapshot["truncated"] is False

    assert await ok(handler, request("click", "@e2")) == {"ref": "e2", "x": 195, "y": 222}
    press = dispatcher.calls[-1]
    assert press["command"] == "press"
    assert press["positionals"] == ["195", "222"]
    assert press["context"]["app_bundle_id"] == "com.apple.Preferences"


@pytest.mark.asyncio
async def test_open_tolerates_app_resolution_failure(handler, dispatcher) -> None:
    await ok(handler, request("open", "NoSuchApp"))
    assert handler.sessions.get("default").app_bundle_id is None
    assert dispatcher.commands() == ["open"]


@pytest.mark.asyncio
async def test_invalid_token_is_rejected_first(handler, dispatcher) -> None:
    err = await error(handler, request("open", token="wrong"))
    assert err.code == ErrorCode.UNAUTHORIZED
    assert dispatcher.calls == []


@pytest.mark.asyncio
async def test_session_list(handler) -> None:
    await ok(handler, request("open"))
    await ok(handler, request("open", session="other"))
    data = await ok(handler, request("session_list"))
    assert sorted(s["name"] for s in data["sessions"]) == ["default", "other"]
    assert set(data["sessions"][0]) == {"name", "platform", "device", "id", "created_at"}


@pytest.mark.asyncio
async def test_commands_require_a_session(handler) -> None:
    for req in (request("snapshot"), request("close"), request("click", "@e1"), request("back"), request("find", "any", "x")):
        err = await error(handler, req)
        assert err.code == ErrorCode.SESSION_NOT_FOUND
        assert "'default'" in err.message


@pytest.mark.asyncio
async def test_ref_commands_require_a_snapshot(handler, dispatcher) -> None:
    await ok(handler, request("open"))
    for req in (request("click", "@e1"), request("fill", "@e1", "hi"), request("get", "text", "@e1")):
        err = await error(handler, req)
        assert err.code == ErrorCode.INVALID_ARGS
        assert err.message == "No snapshot in session. Run snapshot first."
    assert dispatcher.commands() == ["open"]


@pytest.mark.asyncio
async def test_click_errors(handler) -> None:
    await ok(handler, request("open"))
    await ok(handler, request("snapshot"))

    err = await error(handler, request("click", "button"))
    assert (err.code, err.message) == (ErrorCode.INVALID_ARGS, "click requires a ref like @e2")

    err = await error(handler, request("click", "@e99"))
    assert (err.code, err.message) == (ErrorCode.COMMAND_FAILED, "Ref @e99 not found or has no bounds")

    # StaticText at e4 has no rect
    err = await error(handler, request("click", "@e4"))
    assert err.code == ErrorCode.COMMAND_FAILED


@pytest.mark.asyncio
async def test_fill_by_ref(handler, dispatcher) -> None:
    await ok(handler, request("open"))
    await ok(handler, request("snapshot"))

    data = await ok(handler, request("fill", "@e3", "hello", "world"))
    assert data == {"ref": "e3", "x": 195, "y": 318}
    assert dispatcher.calls[-1]["positionals"] == ["195", "318", "hello world"]

    err = await error(handler, request("fill", "@e3"))
    assert (err.code, err.message) == (ErrorCode.INVALID_ARGS, "fill requires text after ref")

    err = await error(handler, request("fill", "@bogus", "x"))
    assert err.code == ErrorCode.INVALID_ARGS


@pytest.mark.asyncio
async def test_fill_without_ref_is_forwarded(handler, dispatcher) -> None:
    await ok(handler, request("open"))
    assert await ok(handler, request("fill", "10", "20", "text")) == {}
    assert dispatcher.calls[-1]["command"] == "fill"
    assert dispatcher.calls[-1]["positionals"] == ["10", "20", "text"]


@pytest.mark.asyncio
async def test_get_text_and_attrs(handler) -> None:
    await ok(handler, request("open"))
    await ok(handler, request("snapshot"))

    data = await ok(handler, request("get", "text", "@e4"))
    assert data["text"] == "Version 17.2"
    assert data["ref"] == "e4"

    data = await ok(handler, request("get", "text", "e3"))
    assert data["text"] == "search"

    data = await ok(handler, request("get", "attrs", "@e2"))
    assert data["node"]["label"] == "General"
    assert "text" not in data

    err = await error(handler, request("get", "bounds", "@e2"))
    assert (err.code, err.message) == (ErrorCode.INVALID_ARGS, "get only supports text or attrs")

    err = await error(handler, request("get", "text", "@e42"))
    assert err.code == ErrorCode.COMMAND_FAILED


@pytest.mark.asyncio
async def test_each_snapshot_is_a_new_state(handler) -> None:
    await ok(handler, request("open"))
    await ok(handler, request("snapshot"))
    first = handler.sessions.get("default").snapshot
    await ok(handler, request("snapshot"))
    second = handler.sessions.get("default").snapshot
    assert first is not second
    assert first.nodes[2].ref == "e2"
    assert len(first.nodes) == 5


@pytest.mark.asyncio
async def test_sessions_are_isolated(dispatcher) -> None:
    handler = RequestHandler(token=TOKEN, resolver=FakeResolver(), dispatcher=dispatcher)
    await ok(handler, request("open", session="a"))
    await ok(handler, request("open", session="b"))
    await ok(handler, request("snapshot", session="a"))

    err = await error(handler, request("click", "@e2", session="b"))
    assert err.message == "No snapshot in session. Run snapshot first."
    await ok(handler, request("click", "@e2", session="a"))

    await ok(handler, request("close", session="a"))
    assert "a" not in handler.sessions
    assert "b" in handler.sessions


@pytest.mark.asyncio
async def test_close_stops_runner_and_survives_app_close_failure(handler, dispatcher) -> None:
    await ok(handler, request("open"))
    dispatcher.fail_commands["close"] = RuntimeError("app would not die")
    assert await ok(handler, request("close", "Settings")) == {"session": "default"}
    assert dispatcher.stopped == [handler.resolver.device.id]
    assert "default" not in handler.sessions


@pytest.mark.asyncio
async def test_close_without_app_skips_dispatch(handler, dispatcher) -> None:
    await ok(handler, request("open"))
    await ok(handler, request("close"))
    assert dispatcher.commands() == ["open"]


@pytest.mark.asyncio
async def test_reopen_overwrites_session(dispatcher) -> None:
    resolver = FakeResolver()
    handler = RequestHandler(token=TOKEN, resolver=resolver, dispatcher=dispatcher)
    await ok(handler, request("open"))
    await ok(handler, request("snapshot"))
    resolver.device = ANDROID_EMULATOR
    await ok(handler, request("open", platform="android"))
    session = handler.sessions.get("default")
    assert session.device == ANDROID_EMULATOR
    assert session.snapshot is None


@pytest.mark.asyncio
async def test_other_commands_are_forwarded_with_session_device(handler, dispatcher) -> None:
    await ok(handler, request("open"))
    assert await ok(handler, request("scroll", "down", snapshot_depth=2)) == {}
    call = dispatcher.calls[-1]
    assert call["command"] == "scroll"
    assert call["device"] == handler.resolver.device.id
    assert call["context"]["snapshot_depth"] == 2


@pytest.mark.asyncio
async def test_dispatch_errors_become_error_responses(handler, dispatcher) -> None:
    await ok(handler, request("open"))
    dispatcher.fail_commands["swipe"] = ValueError("bad swipe")
    err = await error(handler, request("swipe", "1"))
    assert err.code == ErrorCode.COMMAND_FAILED
    assert err.message == "bad swipe"

    dispatcher.fail_commands["home"] = AppError(ErrorCode.UNSUPPORTED_OPERATION, "no home")
    err = await error(handler, request("home"))
    assert err.code == ErrorCode.UNSUPPORTED_OPERATION


@pytest.mark.asyncio
async def test_find_snapshots_and_acts(handler, dispatcher) -> None:
    await ok(handler, request("open"))

    data = await ok(handler, request("find", "label", "general"))
    assert data["ref"] == "e2"
    assert dispatcher.commands() == ["open", "snapshot"]

    data = await ok(handler, request("find", "id", "search", "fill", "abc"))
    assert data == {"ref": "e3", "x": 195, "y": 318}
    assert dispatcher.commands()[-2:] == ["snapshot", "fill"]

    data = await ok(handler, request("find", "text", "version", "get", "text"))
    assert data["text"] == "Version 17.2"


@pytest.mark.asyncio
async def test_find_errors(handler) -> None:
    await ok(handler, request("open"))
    err = await error(handler, request("find", "xpath", "//x"))
    assert err.code == ErrorCode.INVALID_ARGS
    err = await error(handler, request("find", "label"))
    assert err.code == ErrorCode.INVALID_ARGS
    err = await error(handler, request("find", "label", "nothing-like-this"))
    assert err.code == ErrorCode.COMMAND_FAILED
    # the static text has no bounds, so there is nothing to click
    err = await error(handler, request("find", "text", "version", "click"))
    assert err.code == ErrorCode.COMMAND_FAILED


@pytest.mark.asyncio
async def test_stop_all_runners_is_best_effort(handler, dispatcher) -> None:
    await ok(handler, request("open", session="a"))
    await ok(handler, request("open", session="b"))

    async def failing_stop(device_id: str) -> None:
        dispatcher.stopped.append(device_id)
        raise RuntimeError("runner stuck")

    dispatcher.stop_interactive_runner = failing_stop
    await handler.stop_all_runners()
    assert len(dispatcher.stopped) == 2


@pytest.mark.asyncio
async def test_find_replaces_the_session_snapshot(handler) -> None:
    await ok(handler, request("open"))
    await ok(handler, request("snapshot"))
    before = handler.sessions.get("default").snapshot
    await ok(handler, request("find", "role", "button", "click"))
    after = handler.sessions.get("default").snapshot
    assert after is not before
    assert isinstance(after, SnapshotState)
    assert [n.ref for n in after.nodes] == ["e0", "e1", "e2", "e3", "e4"]
