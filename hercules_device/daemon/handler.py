"""
Request handling for the session daemon.

`RequestHandler.handle` turns one `DaemonRequest` into one response. It is the
only code that reads or mutates the `SessionStore`; every exception raised
while handling a request is turned into an `ErrorResponse`.
"""

import time
from typing import Any, Dict, List, Mapping, Optional

from hercules_device.core.device import DeviceInfo, DeviceResolver
from hercules_device.core.dispatch import Dispatcher
from hercules_device.core.errors import AppError, ErrorCode, as_app_error
from hercules_device.core.finders import LOCATORS, find_node_by_locator
from hercules_device.core.snapshot import (
    SnapshotNode,
    SnapshotState,
    attach_refs,
    center_of_rect,
    find_node_by_ref,
    normalize_ref,
)
from hercules_device.daemon.protocol import DaemonRequest, DaemonResponse, ErrorResponse, OkResponse
from hercules_device.daemon.session import Session, SessionStore
from hercules_device.telemetry import EventData, EventType, add_event
from hercules_device.utils.logger import logger

NO_SNAPSHOT_MESSAGE = "No snapshot in session. Run snapshot first."


def context_from_flags(flags: Mapping[str, Any], app_bundle_id: Optional[str] = None, log_path: Optional[str] = None) -> Dict[str, Any]:
    """Subset of request flags that platform dispatch understands."""
    return {
        "app_bundle_id": app_bundle_id,
        "verbose": bool(flags.get("verbose")),
        "log_path": log_path,
        "snapshot_backend": flags.get("snapshot_backend"),
        "snapshot_depth": flags.get("snapshot_depth"),
        "snapshot_max_nodes": flags.get("snapshot_max_nodes"),
    }


def node_text(node: SnapshotNode) -> str:
    for candidate in (node.label, node.value, node.identifier):
        if candidate and candidate.strip():
            return candidate.strip()
    return ""


class RequestHandler:
    def __init__(
        self,
        token: str,
        resolver: DeviceResolver,
        dispatcher: Dispatcher,
        sessions: Optional[SessionStore] = None,
        log_path: Optional[str] = None,
    ):
        self.token = token
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.sessions = sessions if sessions is not None else SessionStore()
        self.log_path = log_path

    def is_authorized(self, token: Any) -> bool:
        return isinstance(token, str) and token == self.token

    @staticmethod
    def unauthorized(command: Any) -> ErrorResponse:
        logger.warning(f"Rejected {command!r} request with an invalid token")
        return ErrorResponse(AppError(ErrorCode.UNAUTHORIZED, "Invalid token"))

    async def handle(self, request: DaemonRequest) -> DaemonResponse:
        if not self.is_authorized(request.token):
            return self.unauthorized(request.command)

        start_time = time.time()
        try:
            data = await self._handle(request)
        except Exception as e:
            err = as_app_error(e)
            if isinstance(e, AppError):
                logger.error(f"{request.command} failed for session '{request.session}': {err.code.value} {err.message}")
            else:
                logger.exception(f"Unexpected error while handling {request.command} for session '{request.session}'")
            add_event(
                EventType.ERROR,
                EventData(detail=request.command, metadata={"code": err.code.value, "message": err.message}),
            )
            return ErrorResponse(err)

        logger.info(f"Handled {request.command} for session '{request.session}' in {time.time() - start_time:.2f}s")
        add_event(EventType.COMMAND, EventData(detail=request.command, metadata={"session": request.session}))
        return OkResponse(data=data)

    async def _handle(self, request: DaemonRequest) -> Dict[str, Any]:
        command = request.command
        name = request.session or "default"

        if command == "session_list":
            return {"sessions": [session.summary() for session in self.sessions]}
        if command == "open":
            return await self.open_session(name, request)
        if command == "close":
            return await self.close_session(name, request)
        if command == "snapshot":
            state = await self.take_snapshot(self.require_session(name), request)
            return state.to_dict()
        if command == "click":
            return await self.click(name, request)
        if command == "fill" and request.positionals and request.positionals[0].startswith("@"):
            return await self.fill_ref(name, request)
        if command == "get":
            return self.get(name, request)
        if command == "find":
            return await self.find(name, request)

        session = self.require_session(name)
        data = await self.dispatcher.dispatch_command(
            session.device,
            command,
            request.positionals,
            request.flags.get("out"),
            self._context(session, request),
        )
        return data or {}

    # ─── SESSION LIFECYCLE ──────────────────────────────────────────────────────

    def require_session(self, name: str) -> Session:
        session = self.sessions.get(name)
        if session is None:
            raise AppError(ErrorCode.SESSION_NOT_FOUND, f"No active session '{name}'. Run open first.")
        return session

    def require_snapshot(self, name: str) -> SnapshotState:
        snapshot = self.require_session(name).snapshot
        if snapshot is None:
            raise AppError(ErrorCode.INVALID_ARGS, NO_SNAPSHOT_MESSAGE)
        return snapshot

    def _context(self, session: Optional[Session], request: DaemonRequest) -> Dict[str, Any]:
        app_bundle_id = session.app_bundle_id if session else None
        return context_from_flags(request.flags, app_bundle_id, self.log_path)

    async def open_session(self, name: str, request: DaemonRequest) -> Dict[str, Any]:
        device = await self.resolver.resolve_target_device(request.flags)
        app_bundle_id = await self._resolve_app(device, request.positionals[0] if request.positionals else "")
        await self.dispatcher.dispatch_command(
            device,
            "open",
            request.positionals,
            request.flags.get("out"),
            context_from_flags(request.flags, app_bundle_id, self.log_path),
        )
        self.sessions.set(Session(name=name, device=device, app_bundle_id=app_bundle_id))
        logger.info(f"Opened session '{name}' on {device.platform} {device.kind} {device.name} ({device.id})")
        add_event(EventType.SESSION, EventData(detail="open", metadata={"platform": device.platform, "kind": device.kind}))
        return {"session": name}

    async def _resolve_app(self, device: DeviceInfo, app: str) -> Optional[str]:
        if device.platform != "ios":
            return None
        try:
            return await self.dispatcher.resolve_app(device, app)
        except Exception as e:
            logger.warning(f"Could not resolve app {app!r} on {device.id}: {e}")
            return None

    async def close_session(self, name: str, request: DaemonRequest) -> Dict[str, Any]:
        session = self.require_session(name)
        try:
            if request.positionals:
                try:
                    await self.dispatcher.dispatch_command(
                        session.device,
                        "close",
                        request.positionals,
                        request.flags.get("out"),
                        self._context(session, request),
                    )
                except Exception as e:
                    logger.error(f"Closing app for session '{name}' failed: {e}")
            await self.dispatcher.stop_interactive_runner(session.device.id)
        finally:
            self.sessions.delete(name)
        logger.info(f"Closed session '{name}'")
        add_event(EventType.SESSION, EventData(detail="close", metadata={"platform": session.device.platform}))
        return {"session": name}

    # ─── SNAPSHOT AND REF COMMANDS ──────────────────────────────────────────────

    async def take_snapshot(self, session: Session, request: DaemonRequest) -> SnapshotState:
        data = await self.dispatcher.dispatch_command(
            session.device,
            "snapshot",
            [],
            request.flags.get("out"),
            self._context(session, request),
        )
        data = data or {}
        nodes = attach_refs(data.get("nodes") or [])
        state = SnapshotState(nodes=tuple(nodes), truncated=bool(data.get("truncated", False)))
        # replaced in one assignment; readers holding the previous state keep it
        session.snapshot = state
        add_event(EventType.SNAPSHOT, EventData(detail="snapshot", metadata={"nodes": len(nodes), "truncated": state.truncated}))
        return state

    def _resolve_ref_point(self, snapshot: SnapshotState, ref_input: str, command: str) -> Dict[str, Any]:
        ref = normalize_ref(ref_input)
        if ref is None:
            raise AppError(ErrorCode.INVALID_ARGS, f"{command} requires a ref like @e2")
        node = find_node_by_ref(snapshot.nodes, ref)
        if node is None or node.rect is None:
            raise AppError(ErrorCode.COMMAND_FAILED, f"Ref {ref_input} not found or has no bounds")
        x, y = center_of_rect(node.rect)
        return {"ref": ref, "x": x, "y": y}

    async def _press(self, session: Session, request: DaemonRequest, target: Dict[str, Any]) -> Dict[str, Any]:
        await self.dispatcher.dispatch_command(
            session.device,
            "press",
            [str(target["x"]), str(target["y"])],
            request.flags.get("out"),
            self._context(session, request),
        )
        return target

    async def _fill(self, session: Session, request: DaemonRequest, target: Dict[str, Any], text: str) -> Dict[str, Any]:
        data = await self.dispatcher.dispatch_command(
            session.device,
            "fill",
            [str(target["x"]), str(target["y"]), text],
            request.flags.get("out"),
            self._context(session, request),
        )
        return data or target

    async def click(self, name: str, request: DaemonRequest) -> Dict[str, Any]:
        session = self.require_session(name)
        snapshot = self.require_snapshot(name)
        target = self._resolve_ref_point(snapshot, request.positionals[0] if request.positionals else "", "click")
        return await self._press(session, request, target)

    async def fill_ref(self, name: str, request: DaemonRequest) -> Dict[str, Any]:
        session = self.require_session(name)
        snapshot = self.require_snapshot(name)
        ref_input = request.positionals[0]
        if normalize_ref(ref_input) is None:
            raise AppError(ErrorCode.INVALID_ARGS, "fill requires a ref like @e2")
        text = " ".join(request.positionals[1:])
        if not text:
            raise AppError(ErrorCode.INVALID_ARGS, "fill requires text after ref")
        target = self._resolve_ref_point(snapshot, ref_input, "fill")
        return await self._fill(session, request, target, text)

    def get(self, name: str, request: DaemonRequest) -> Dict[str, Any]:
        sub = request.positionals[0] if request.positionals else None
        if sub not in ("text", "attrs"):
            raise AppError(ErrorCode.INVALID_ARGS, "get only supports text or attrs")
        snapshot = self.require_snapshot(name)
        ref_input = request.positionals[1] if len(request.positionals) > 1 else ""
        ref = normalize_ref(ref_input)
        if ref is None:
            raise AppError(ErrorCode.INVALID_ARGS, f"get {sub} requires a ref like @e2")
        node = find_node_by_ref(snapshot.nodes, ref)
        if node is None:
            raise AppError(ErrorCode.COMMAND_FAILED, f"Ref {ref_input} not found")
        return self._describe(node, sub)

    @staticmethod
    def _describe(node: SnapshotNode, sub: str) -> Dict[str, Any]:
        if sub == "attrs":
            return {"ref": node.ref, "node": node.to_dict()}
        return {"ref": node.ref, "text": node_text(node), "node": node.to_dict()}

    async def find(self, name: str, request: DaemonRequest) -> Dict[str, Any]:
        """
        `find <locator> <query> [click | fill <text> | get text | get attrs]`

        Always takes a fresh snapshot first, so refs from earlier snapshots of
        this session stop being valid.
        """
        session = self.require_session(name)
        args: List[str] = list(request.positionals)
        if len(args) < 2:
            raise AppError(ErrorCode.INVALID_ARGS, "find requires a locator and a query")
        locator, query, action = args[0], args[1], args[2:]
        if locator not in LOCATORS:
            raise AppError(ErrorCode.INVALID_ARGS, f"Unknown locator: {locator}", {"locators": list(LOCATORS)})

        verb = action[0] if action else None
        if verb not in (None, "click", "fill", "get"):
            raise AppError(ErrorCode.INVALID_ARGS, f"Unknown find action: {verb}")
        if verb == "fill" and not " ".join(action[1:]):
            raise AppError(ErrorCode.INVALID_ARGS, "find fill requires text")
        if verb == "get" and (len(action) < 2 or action[1] not in ("text", "attrs")):
            raise AppError(ErrorCode.INVALID_ARGS, "get only supports text or attrs")

        snapshot = await self.take_snapshot(session, request)
        node = find_node_by_locator(snapshot.nodes, locator, query, require_rect=verb in ("click", "fill"))
        if node is None:
            raise AppError(ErrorCode.COMMAND_FAILED, f"No element matches {locator} {query!r}")

        if verb is None:
            return {"ref": node.ref, "node": node.to_dict()}
        if verb == "get":
            return self._describe(node, action[1])
        target = self._resolve_ref_point(snapshot, node.ref or "", verb)
        if verb == "click":
            return await self._press(session, request, target)
        return await self._fill(session, request, target, " ".join(action[1:]))

    async def stop_all_runners(self) -> None:
        """Best effort: stop the interactive runner of every open session."""
        for session in self.sessions:
            try:
                await self.dispatcher.stop_interactive_runner(session.device.id)
            except Exception as e:
                logger.error(f"Failed to stop runner for session '{session.name}' ({session.device.id}): {e}")
