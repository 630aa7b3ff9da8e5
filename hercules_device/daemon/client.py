import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional, Tuple

from hercules_device.config import get_global_conf
from hercules_device.core.errors import AppError, ErrorCode
from hercules_device.core.output import format_snapshot_text
from hercules_device.daemon.protocol import STREAM_LIMIT, DaemonRequest, DaemonResponse, ErrorResponse, response_from_dict
from hercules_device.utils.logger import logger


class DaemonClient:
    """
    Talks to a running daemon. Used as an async context manager the client keeps
    one connection, so its requests are answered in the order they were sent.
    """

    def __init__(self, port: int, token: str, host: str = "127.0.0.1"):
        self.host = host
        self.port = port
        self.token = token
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    @classmethod
    def from_info_file(cls, info_path: Optional[str] = None) -> "DaemonClient":
        conf = get_global_conf()
        info_path = info_path or conf.get_info_path()
        try:
            with open(info_path, "r", encoding="utf-8") as f:
                info = json.load(f)
        except FileNotFoundError:
            raise AppError(ErrorCode.COMMAND_FAILED, "Daemon is not running. Start it with hercules-device-daemon.", {"info_path": info_path})
        except json.JSONDecodeError as e:
            raise AppError(ErrorCode.COMMAND_FAILED, "Daemon info file is corrupt", {"info_path": info_path, "error": str(e)})
        return cls(port=int(info["port"]), token=str(info["token"]), host=conf.get_daemon_host())

    async def connect(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        if self._reader is None or self._writer is None:
            self._reader, self._writer = await asyncio.open_connection(self.host, self.port, limit=STREAM_LIMIT)
        return self._reader, self._writer

    async def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            await self._writer.wait_closed()
        self._reader = None
        self._writer = None

    async def __aenter__(self) -> "DaemonClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def send_request(
        self,
        command: str,
        positionals: Optional[List[str]] = None,
        session: str = "default",
        flags: Optional[Dict[str, Any]] = None,
    ) -> DaemonResponse:
        request = DaemonRequest(
            token=self.token,
            session=session,
            command=command,
            positionals=list(positionals or []),
            flags=dict(flags or {}),
        )
        one_shot = self._writer is None
        reader, writer = await self.connect()
        try:
            writer.write(f"{request.to_json()}\n".encode("utf-8"))
            await writer.drain()
            line = await reader.readline()
        finally:
            if one_shot:
                await self.close()
        if not line:
            raise AppError(ErrorCode.COMMAND_FAILED, "Daemon closed the connection")
        return response_from_dict(json.loads(line))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hercules-device", description="Send a command to the hercules-device daemon.")
    parser.add_argument("--session", default="default", help="Session name")
    # read by the config layer; declared so it is not taken for the command
    parser.add_argument("--state-dir", help="Directory holding daemon.json")
    parser.add_argument("--platform", choices=["ios", "android"])
    parser.add_argument("--device", help="Device name")
    parser.add_argument("--udid", help="iOS device udid")
    parser.add_argument("--serial", help="Android device serial")
    parser.add_argument("--out", help="Output file for commands that write one")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--backend", dest="snapshot_backend", choices=["ax", "appium"])
    parser.add_argument("--depth", dest="snapshot_depth", type=int)
    parser.add_argument("--max-nodes", dest="snapshot_max_nodes", type=int)
    parser.add_argument("--json", action="store_true", help="Print raw JSON responses")
    parser.add_argument("command")
    parser.add_argument("args", nargs=argparse.REMAINDER)
    return parser


def flags_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    keys = ("platform", "device", "udid", "serial", "out", "verbose", "snapshot_backend", "snapshot_depth", "snapshot_max_nodes")
    return {key: getattr(args, key) for key in keys if getattr(args, key) not in (None, False)}


def render_response(command: str, response: DaemonResponse, as_json: bool = False) -> str:
    if as_json:
        return response.to_json()
    if isinstance(response, ErrorResponse):
        return f"Error ({response.code.value}): {response.error.message}"
    data = response.data or {}
    if command in ("snapshot", "find") and "nodes" in data:
        return format_snapshot_text(data)
    return json.dumps(data, indent=2)


async def a_main(argv: Optional[List[str]] = None) -> int:
    args, _ = _build_parser().parse_known_args(argv)
    try:
        client = DaemonClient.from_info_file()
        response = await client.send_request(args.command, args.args, session=args.session, flags=flags_from_args(args))
    except (AppError, OSError) as e:
        logger.error(f"Request failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    text = render_response(args.command, response, as_json=args.json)
    if isinstance(response, ErrorResponse):
        print(text, file=sys.stderr)
        return 1
    print(text)
    return 0


def main() -> None:
    sys.exit(asyncio.run(a_main()))
