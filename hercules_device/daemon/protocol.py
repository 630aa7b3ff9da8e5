"""Newline-delimited JSON wire protocol between clients and the daemon."""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from hercules_device.core.errors import AppError, ErrorCode

# snapshots of large screens make for long response lines
STREAM_LIMIT = 4 * 1024 * 1024


def decode_line(line: Union[str, bytes]) -> Dict[str, Any]:
    """Decode one request line into a JSON object without looking at its fields."""
    try:
        data = json.loads(line)
    # RecursionError: pathologically nested arrays or objects
    except (ValueError, RecursionError) as e:
        raise AppError(ErrorCode.INVALID_ARGS, "Invalid JSON request", {"error": str(e)[:200]}) from e
    if not isinstance(data, dict):
        raise AppError(ErrorCode.INVALID_ARGS, "Request must be a JSON object")
    return data


@dataclass
class DaemonRequest:
    token: str
    session: str
    command: str
    positionals: List[str] = field(default_factory=list)
    flags: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "DaemonRequest":
        if not isinstance(data, dict):
            raise AppError(ErrorCode.INVALID_ARGS, "Request must be a JSON object")
        command = data.get("command")
        if not isinstance(command, str) or not command:
            raise AppError(ErrorCode.INVALID_ARGS, "Request is missing a command")
        positionals = data.get("positionals") or []
        if not isinstance(positionals, list):
            raise AppError(ErrorCode.INVALID_ARGS, "positionals must be a list")
        flags = data.get("flags") or {}
        if not isinstance(flags, dict):
            raise AppError(ErrorCode.INVALID_ARGS, "flags must be an object")
        return cls(
            token=str(data.get("token") or ""),
            session=str(data.get("session") or "default"),
            command=command,
            positionals=[str(item) for item in positionals],
            flags=flags,
        )

    @classmethod
    def from_json(cls, line: Union[str, bytes]) -> "DaemonRequest":
        return cls.from_dict(decode_line(line))

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "token": self.token,
            "session": self.session,
            "command": self.command,
            "positionals": list(self.positionals),
        }
        if self.flags:
            body["flags"] = dict(self.flags)
        return body

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class OkResponse:
    data: Optional[Dict[str, Any]] = None
    ok: bool = field(default=True, init=False)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"ok": True}
        if self.data is not None:
            body["data"] = self.data
        return body

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class ErrorResponse:
    error: AppError
    ok: bool = field(default=False, init=False)

    @property
    def code(self) -> ErrorCode:
        return self.error.code

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.error.to_dict()}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


DaemonResponse = Union[OkResponse, ErrorResponse]


def response_from_dict(data: Dict[str, Any]) -> DaemonResponse:
    if data.get("ok"):
        return OkResponse(data=data.get("data"))
    error = data.get("error") or {}
    return ErrorResponse(
        error=AppError(
            ErrorCode(error.get("code", ErrorCode.COMMAND_FAILED.value)),
            error.get("message", "Unknown error"),
            error.get("details"),
        )
    )
