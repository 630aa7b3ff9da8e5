from hercules_device.daemon.protocol import DaemonRequest, ErrorResponse, OkResponse  # noqa: F401
from hercules_device.daemon.session import Session, SessionStore  # noqa: F401
