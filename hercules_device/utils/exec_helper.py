import asyncio
from dataclasses import dataclass
from typing import List, Optional

from hercules_device.core.errors import AppError, ErrorCode
from hercules_device.utils.logger import logger


@dataclass(frozen=True)
class CmdResult:
    stdout: str
    stderr: str
    exit_code: int


async def run_cmd(
    cmd: str,
    args: List[str],
    cwd: Optional[str] = None,
    allow_failure: bool = False,
    timeout: Optional[float] = None,
) -> CmdResult:
    """
    Run an external tool without blocking the event loop.

    Raises AppError(COMMAND_FAILED) when the tool cannot be started, times out,
    or exits non-zero while `allow_failure` is False.
    """
    command = [cmd, *args]
    logger.debug(f"Running command: {' '.join(command)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
    except OSError as e:
        raise AppError(ErrorCode.COMMAND_FAILED, f"Failed to run {cmd}", {"error": str(e), "cmd": cmd}) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        process.kill()
        await process.wait()
        raise AppError(
            ErrorCode.COMMAND_FAILED,
            f"{cmd} timed out after {timeout}s",
            {"cmd": cmd, "args": args, "retryable": True},
        ) from e

    result = CmdResult(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        exit_code=process.returncode if process.returncode is not None else -1,
    )
    if result.exit_code != 0 and not allow_failure:
        raise AppError(
            ErrorCode.COMMAND_FAILED,
            f"{cmd} exited with code {result.exit_code}",
            {"cmd": cmd, "args": args, "stdout": result.stdout, "stderr": result.stderr, "exit_code": result.exit_code},
        )
    return result
