import asyncio

from hercules_device.config import get_global_conf
from hercules_device.daemon.server import run_daemon
from hercules_device.utils.logger import set_log_level


def main() -> None:
    set_log_level(get_global_conf().get_log_level())
    try:
        asyncio.run(run_daemon())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":  # pragma: no cover
    main()
