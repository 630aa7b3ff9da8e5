"""
Long-lived daemon process.

Listens on a loopback TCP port, publishes `{port, token, pid, version}` in the
state directory and serves newline-delimited JSON requests. Each connection is
served sequentially: a request's response is written before the next line is
read.
"""

import asyncio
import json
import os
import secrets
import signal
from typing import Any, Dict, Optional, Set

from hercules_device import __version__
from hercules_device.config import get_global_conf
from hercules_device.core.device import DeviceResolver
from hercules_device.core.dispatch import Dispatcher, PlatformDispatcher
from hercules_device.core.errors import AppError, ErrorCode, as_app_error
from hercules_device.daemon.handler import RequestHandler
from hercules_device.daemon.protocol import STREAM_LIMIT, DaemonRequest, DaemonResponse, ErrorResponse, decode_line
from hercules_device.telemetry import flush_telemetry
from hercules_device.utils.logger import add_file_handler, logger, remove_handler

PORT_ANNOUNCEMENT = "HERCULES_DEVICE_DAEMON_PORT"
SHUTDOWN_SIGNALS = ("SIGINT", "SIGTERM", "SIGHUP")


def write_info(info_path: str, info: Dict[str, Any]) -> None:
    """Write the connection record readable by the current user only."""
    os.makedirs(os.path.dirname(info_path), exist_ok=True)
    fd = os.open(info_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(info, f, indent=2)
    os.chmod(info_path, 0o600)


def remove_info(info_path: str) -> None:
    if os.path.exists(info_path):
        os.remove(info_path)


class DaemonServer:
    def __init__(
        self,
        handler: RequestHandler,
        host: str = "127.0.0.1",
        port: int = 0,
        info_path: Optional[str] = None,
        version: str = __version__,
        limit: int = STREAM_LIMIT,
    ):
        self.handler = handler
        self.limit = limit
        self.host = host
        self.port = port
        self.info_path = info_path
        self.version = version
        self._server: Optional[asyncio.AbstractServer] = None
        self._stopped = asyncio.Event()
        self._shutdown_started = False
        self._writers: Set[asyncio.StreamWriter] = set()

    @property
    def token(self) -> str:
        return self.handler.token

    async def start(self) -> int:
        self._server = await asyncio.start_server(self._handle_connection, self.host, self.port, limit=self.limit)
        self.port = self._server.sockets[0].getsockname()[1]
        if self.info_path:
            write_info(self.info_path, {"port": self.port, "token": self.token, "pid": os.getpid(), "version": self.version})
        logger.info(f"Daemon listening on {self.host}:{self.port}")
        return self.port

    async def process_line(self, line: bytes) -> DaemonResponse:
        """Token first, then the request fields, then the handler."""
        try:
            data = decode_line(line)
        except AppError as err:
            logger.warning(f"Rejected malformed request: {err.message}")
            return ErrorResponse(err)
        if not self.handler.is_authorized(data.get("token")):
            return self.handler.unauthorized(data.get("command"))
        try:
            request = DaemonRequest.from_dict(data)
        except AppError as err:
            logger.warning(f"Rejected malformed request: {err.message}")
            return ErrorResponse(err)
        return await self.handler.handle(request)

    async def _respond(self, writer: asyncio.StreamWriter, response: DaemonResponse) -> None:
        writer.write(f"{response.to_json()}\n".encode("utf-8"))
        await writer.drain()

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        logger.debug(f"Client connected: {peer}")
        self._writers.add(writer)
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                if not line.strip():
                    continue
                try:
                    response = await self.process_line(line.strip())
                except Exception as e:
                    # kept away from the loop exception handler, which shuts the daemon down
                    logger.exception(f"Unexpected error while processing a request from {peer}")
                    response = ErrorResponse(as_app_error(e))
                await self._respond(writer, response)
        except ConnectionError as e:
            logger.debug(f"Client {peer} went away: {e}")
        except ValueError as e:
            # readline() raises ValueError for lines over the stream limit
            logger.error(f"Request from {peer} exceeded the line limit: {e}")
            too_long = AppError(ErrorCode.INVALID_ARGS, f"Request line exceeds {self.limit} bytes")
            try:
                await self._respond(writer, ErrorResponse(too_long))
            except ConnectionError:
                pass
        finally:
            self._writers.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass
            logger.debug(f"Client disconnected: {peer}")

    async def shutdown(self) -> None:
        """Stop runners, stop listening, withdraw the info record. Safe to call twice."""
        if self._shutdown_started:
            await self._stopped.wait()
            return
        self._shutdown_started = True
        logger.info("Daemon shutting down")
        try:
            await self.handler.stop_all_runners()
        finally:
            if self._server is not None:
                self._server.close()
                for writer in list(self._writers):
                    writer.close()
                await self._server.wait_closed()
            if self.info_path:
                remove_info(self.info_path)
            flush_telemetry()
            self._stopped.set()

    async def wait_closed(self) -> None:
        await self._stopped.wait()


def _install_shutdown_hooks(server: DaemonServer) -> None:
    loop = asyncio.get_running_loop()

    def request_shutdown(reason: str) -> None:
        logger.info(f"Shutdown requested ({reason})")
        loop.create_task(server.shutdown())

    for name in SHUTDOWN_SIGNALS:
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, request_shutdown, name)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"Signal {name} not supported on this platform")

    def on_loop_error(_loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        message = as_app_error(exc).message if exc else context.get("message", "unknown error")
        logger.error(f"Daemon error: {message}")
        request_shutdown("unhandled error")

    loop.set_exception_handler(on_loop_error)


async def run_daemon(
    resolver: Optional[DeviceResolver] = None,
    dispatcher: Optional[Dispatcher] = None,
) -> None:
    conf = get_global_conf()
    log_path = conf.get_log_path()
    # a fresh log per daemon run
    open(log_path, "w", encoding="utf-8").close()
    file_handler = add_file_handler(log_path)

    handler = RequestHandler(
        token=secrets.token_hex(24),
        resolver=resolver or DeviceResolver(),
        dispatcher=dispatcher or PlatformDispatcher(),
        log_path=log_path,
    )
    server = DaemonServer(handler, host=conf.get_daemon_host(), port=conf.get_daemon_port(), info_path=conf.get_info_path())
    try:
        port = await server.start()
        print(f"{PORT_ANNOUNCEMENT}={port}", flush=True)
        _install_shutdown_hooks(server)
        await server.wait_closed()
    finally:
        await server.shutdown()
        remove_handler(file_handler)
