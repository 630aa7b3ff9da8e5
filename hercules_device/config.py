# config_manager.py

import argparse
import os
from typing import Optional

from dotenv import load_dotenv
from hercules_device.utils.logger import logger


class BaseConfigManager:
    """
    The base class that contains the common logic for:
      - argument parsing
      - optional env variable merging
      - state directory creation
    """

    def __init__(self, config_dict: dict, ignore_env: bool = False):
        """
        Initialize the config manager with config_dict as base.

        Args:
            config_dict (dict): The base configuration dictionary.
            ignore_env (bool): If True, environment variables and CLI arguments are ignored.
        """
        self._config = config_dict.copy()
        self._ignore_env = ignore_env

        # 1) Possibly load .env if not in test environment
        is_test_env = os.environ.get("IS_TEST_ENV", "false").lower() == "true"
        if not is_test_env and not self._ignore_env:
            load_dotenv(".env", override=True)

        # 2) Command-line arguments are pushed into the environment
        if not self._ignore_env:
            self._parse_arguments()

        # 3) Merge environment variables
        if not self._ignore_env:
            self._merge_from_env()

        # 4) Defaults for anything still missing
        self._finalize_defaults()

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    def _parse_arguments(self) -> None:
        """
        Parse daemon command-line arguments
        and place them into the environment for consistency.
        """
        parser = argparse.ArgumentParser(description="Hercules device daemon", allow_abbrev=False)
        parser.add_argument("--state-dir", type=str, help="Directory holding daemon.json and daemon.log.", required=False)
        parser.add_argument("--host", type=str, help="Interface the daemon listens on.", required=False)
        parser.add_argument("--port", type=int, help="Port the daemon listens on (0 picks a free one).", required=False)
        parser.add_argument("--ax-binary", type=str, help="Path to a prebuilt axsnapshot helper.", required=False)
        parser.add_argument("--ax-trace-log", type=str, help="Append axsnapshot attempt traces to this file.", required=False)
        parser.add_argument("--ax-timeout", type=float, help="Seconds one axsnapshot run may take.", required=False)
        parser.add_argument("--appium-url", type=str, help="Appium server URL used for device interaction.", required=False)
        parser.add_argument("--log-level", type=str, help="Logging level.", required=False)

        # Parse known args; ignore unknown if you have other custom arguments
        args, _ = parser.parse_known_args()

        if args.state_dir:
            os.environ["STATE_DIR"] = args.state_dir
        if args.host:
            os.environ["DAEMON_HOST"] = args.host
        if args.port is not None:
            os.environ["DAEMON_PORT"] = str(args.port)
        if args.ax_binary:
            os.environ["AX_SNAPSHOT_BINARY"] = args.ax_binary
        if args.ax_trace_log:
            os.environ["AX_TRACE_LOG_PATH"] = args.ax_trace_log
        if args.ax_timeout is not None:
            os.environ["AX_SNAPSHOT_TIMEOUT_S"] = str(args.ax_timeout)
        if args.appium_url:
            os.environ["APPIUM_SERVER_URL"] = args.appium_url
        if args.log_level:
            os.environ["LOG_LEVEL"] = args.log_level

    def _merge_from_env(self) -> None:
        """
        Merge any relevant environment variables into the configuration dictionary.
        """
        relevant_keys = [
            "STATE_DIR",
            "DAEMON_HOST",
            "DAEMON_PORT",
            "AX_SNAPSHOT_BINARY",
            "AX_TRACE_LOG_PATH",
            "AX_SNAPSHOT_TIMEOUT_S",
            "RETRY_ATTEMPTS",
            "RETRY_BASE_DELAY_MS",
            "RETRY_MAX_DELAY_MS",
            "RETRY_JITTER",
            "SNAPSHOT_MAX_NODES",
            "APPIUM_SERVER_URL",
            "LOG_LEVEL",
            "ENABLE_TELEMETRY",
            "SENTRY_DSN",
        ]

        for key in relevant_keys:
            if key in os.environ:
                self._config[key] = os.environ[key]

    def _finalize_defaults(self) -> None:
        """
        Provide default values for keys that might not be in self._config.
        """
        self._config.setdefault("STATE_DIR", os.path.join(os.path.expanduser("~"), ".hercules-device"))
        self._config.setdefault("DAEMON_HOST", "127.0.0.1")
        self._config.setdefault("DAEMON_PORT", "0")
        self._config.setdefault("AX_SNAPSHOT_BINARY", None)
        self._config.setdefault("AX_TRACE_LOG_PATH", None)
        self._config.setdefault("AX_SNAPSHOT_TIMEOUT_S", "30")
        self._config.setdefault("RETRY_ATTEMPTS", "3")
        self._config.setdefault("RETRY_BASE_DELAY_MS", "200")
        self._config.setdefault("RETRY_MAX_DELAY_MS", "2000")
        self._config.setdefault("RETRY_JITTER", "0.2")
        self._config.setdefault("SNAPSHOT_MAX_NODES", "1500")
        self._config.setdefault("APPIUM_SERVER_URL", "http://127.0.0.1:4723")
        self._config.setdefault("LOG_LEVEL", "INFO")
        self._config.setdefault("ENABLE_TELEMETRY", "false")
        self._config.setdefault("SENTRY_DSN", None)

    # -------------------------------------------------------------------------
    # Public Getters
    # -------------------------------------------------------------------------

    def get_state_dir(self) -> str:
        path = self._config["STATE_DIR"]
        if not os.path.exists(path):
            os.makedirs(path, exist_ok=True)
            logger.info(f"Created STATE_DIR folder at: {path}")
        return path

    def get_info_path(self) -> str:
        return os.path.join(self.get_state_dir(), "daemon.json")

    def get_log_path(self) -> str:
        return os.path.join(self.get_state_dir(), "daemon.log")

    def get_daemon_host(self) -> str:
        return self._config["DAEMON_HOST"]

    def get_daemon_port(self) -> int:
        return int(self._config["DAEMON_PORT"])

    def get_ax_snapshot_binary(self) -> Optional[str]:
        return self._config["AX_SNAPSHOT_BINARY"] or None

    def get_ax_trace_log_path(self) -> Optional[str]:
        return self._config["AX_TRACE_LOG_PATH"] or None

    def get_ax_snapshot_timeout_s(self) -> float:
        return float(self._config["AX_SNAPSHOT_TIMEOUT_S"])

    def get_retry_attempts(self) -> int:
        return int(self._config["RETRY_ATTEMPTS"])

    def get_retry_base_delay_ms(self) -> float:
        return float(self._config["RETRY_BASE_DELAY_MS"])

    def get_retry_max_delay_ms(self) -> float:
        return float(self._config["RETRY_MAX_DELAY_MS"])

    def get_retry_jitter(self) -> float:
        return float(self._config["RETRY_JITTER"])

    def get_snapshot_max_nodes(self) -> int:
        return int(self._config["SNAPSHOT_MAX_NODES"])

    def get_appium_server_url(self) -> str:
        return self._config["APPIUM_SERVER_URL"]

    def get_log_level(self) -> str:
        return self._config["LOG_LEVEL"]

    def should_enable_telemetry(self) -> bool:
        return str(self._config["ENABLE_TELEMETRY"]).lower().strip() in ["true", "1"]

    def get_sentry_dsn(self) -> Optional[str]:
        return self._config["SENTRY_DSN"] or None


class SingletonConfigManager(BaseConfigManager):
    """Singleton configuration manager for the entire daemon process."""

    _instance = None

    def __init__(self, config_dict: dict, ignore_env: bool = False):
        if SingletonConfigManager._instance is not None:
            raise RuntimeError("Use SingletonConfigManager.instance() instead")
        super().__init__(config_dict=config_dict, ignore_env=ignore_env)

    @classmethod
    def instance(cls, config_dict: Optional[dict] = None, ignore_env: bool = False, override: bool = False) -> "SingletonConfigManager":
        if override and config_dict is not None:
            cls.reset_instance()
            cls._instance = cls(config_dict or {}, ignore_env=ignore_env)
            logger.info("SingletonConfigManager instance reset with new config")
        elif cls._instance is None:
            cls._instance = cls(config_dict or {}, ignore_env=ignore_env)
        elif config_dict is not None:
            cls._instance._config.update(config_dict)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None


def get_global_conf() -> SingletonConfigManager:
    return SingletonConfigManager.instance()


def set_global_conf(config_dict: Optional[dict] = None, ignore_env: bool = False, override: bool = False) -> SingletonConfigManager:
    return SingletonConfigManager.instance(config_dict, ignore_env=ignore_env, override=override)
