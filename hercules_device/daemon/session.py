import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional

from hercules_device.core.device import DeviceInfo
from hercules_device.core.snapshot import SnapshotState


@dataclass
class Session:
    name: str
    device: DeviceInfo
    app_bundle_id: Optional[str] = None
    snapshot: Optional[SnapshotState] = None
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))

    def summary(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "platform": self.device.platform,
            "device": self.device.name,
            "id": self.device.id,
            "created_at": self.created_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        body = self.summary()
        body["kind"] = self.device.kind
        if self.app_bundle_id:
            body["app_bundle_id"] = self.app_bundle_id
        return body


class SessionStore:
    """Named sessions held by the request handler. Only the handler mutates it."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    def get(self, name: str) -> Optional[Session]:
        return self._sessions.get(name)

    def set(self, session: Session) -> None:
        self._sessions[session.name] = session

    def delete(self, name: str) -> Optional[Session]:
        return self._sessions.pop(name, None)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, name: object) -> bool:
        return name in self._sessions
