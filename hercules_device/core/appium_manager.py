import time
from typing import Any, Callable, Dict, Optional, cast

from appium import webdriver
from appium.options.common import AppiumOptions
from appium.webdriver.webdriver import WebDriver
from hercules_device.config import get_global_conf
from hercules_device.core.device import DeviceInfo
from hercules_device.utils.logger import logger

ANDROID_KEYCODE_HOME = 3


class AppiumManager:
    """
    Manages one Appium session per device. This is the interactive runner that
    `close` and daemon shutdown stop.

    Provides:
      - session creation against the configured Appium server
      - coordinate based interaction (tap, type, swipe, scroll, back, home)
      - app activation/termination
      - page source for the appium snapshot backend

    All methods are blocking; the dispatcher calls them from a worker thread.
    """

    _instances: Dict[str, "AppiumManager"] = {}

    def __new__(cls, device: DeviceInfo, *args: Any, **kwargs: Any) -> "AppiumManager":
        if device.id not in cls._instances:
            instance = super().__new__(cls)
            instance._initialized = False
            cls._instances[device.id] = instance
            logger.debug(f"Created new AppiumManager instance for device '{device.id}'")
        return cls._instances[device.id]

    def __init__(
        self,
        device: DeviceInfo,
        appium_server_url: Optional[str] = None,
        extra_capabilities: Optional[Dict[str, Any]] = None,
        driver_factory: Optional[Callable[[str, AppiumOptions], WebDriver]] = None,
    ):
        if getattr(self, "_initialized", False):
            return
        self._initialized = True
        self.device = device
        self.platformName = "iOS" if device.platform == "ios" else "Android"
        self.appium_server_url = appium_server_url or get_global_conf().get_appium_server_url()
        self.extra_capabilities = extra_capabilities or {}
        self._driver_factory = driver_factory or (lambda url, options: webdriver.Remote(url, options=options))
        self.driver: Optional[WebDriver] = None

    @classmethod
    def get_instance(cls, device: DeviceInfo) -> "AppiumManager":
        return cls(device)

    @classmethod
    def has_instance(cls, device_id: str) -> bool:
        return device_id in cls._instances

    @classmethod
    def close_instance(cls, device_id: str) -> None:
        """Quit the session bound to `device_id` and forget the instance."""
        instance = cls._instances.pop(device_id, None)
        if instance is None:
            return
        instance.quit_session()
        logger.info(f"Closed AppiumManager instance for device: {device_id}")

    # ─── SESSION ────────────────────────────────────────────────────────────────

    def build_capabilities(self) -> Dict[str, Any]:
        if self.device.platform == "android":
            caps: Dict[str, Any] = {
                "platformName": "Android",
                "appium:automationName": "UiAutomator2",
                "appium:udid": self.device.id,
                "appium:deviceName": self.device.name,
                "appium:autoGrantPermissions": True,
                "appium:noReset": True,
                "appium:newCommandTimeout": 300,
                "appium:settings[waitForIdleTimeout]": 0,
            }
        else:
            caps = {
                "platformName": "iOS",
                "appium:automationName": "XCUITest",
                "appium:udid": self.device.id,
                "appium:deviceName": self.device.name,
                "appium:noReset": True,
                "appium:newCommandTimeout": 300,
                "appium:wdaLaunchTimeout": 120000,
                "appium:wdaConnectionTimeout": 120000,
            }
        caps.update(self.extra_capabilities)
        return caps

    def create_session(self) -> WebDriver:
        if self.driver is not None:
            return self.driver
        options = AppiumOptions()
        options.load_capabilities(self.build_capabilities())
        start_time = time.time()
        logger.info(f"Creating Appium session for {self.platformName} device {self.device.name} ({self.device.id})")
        try:
            self.driver = self._driver_factory(self.appium_server_url, options)
        except Exception as e:
            logger.error(f"Failed to create Appium session: {e}")
            raise
        logger.info(f"[APPIUM_DRIVER_TIMING] Session ready in {time.time() - start_time:.2f} seconds")
        return self.driver

    def quit_session(self) -> None:
        """Quit the Appium session."""
        try:
            if self.driver:
                self.driver.quit()
                logger.info(f"Quit Appium session for device {self.device.id}")
        except Exception as e:
            logger.error(f"Error quitting session: {str(e)}")
        finally:
            self.driver = None

    def _driver(self) -> WebDriver:
        return cast(WebDriver, self.create_session())

    # ─── APPS ───────────────────────────────────────────────────────────────────

    def activate_app(self, app_id: str) -> None:
        logger.info(f"Activating app {app_id}")
        self._driver().activate_app(app_id)

    def terminate_app(self, app_id: str) -> bool:
        logger.info(f"Terminating app {app_id}")
        return bool(self._driver().terminate_app(app_id))

    # ─── INTERACTION ────────────────────────────────────────────────────────────

    def perform_tap(self, x: int, y: int) -> None:
        logger.info(f"Performing tap at coordinates ({x}, {y})")
        self._driver().tap([(x, y)])

    def enter_text_at(self, x: int, y: int, text: str) -> None:
        """Focus the field under (x, y), clear it and type `text`."""
        driver = self._driver()
        driver.tap([(x, y)])
        element = driver.switch_to.active_element
        try:
            element.clear()
        except Exception as e:
            logger.debug(f"Could not clear focused element: {e}")
        element.send_keys(text)

    def type_text(self, text: str) -> None:
        self._driver().switch_to.active_element.send_keys(text)

    def perform_swipe(self, start_x: int, start_y: int, end_x: int, end_y: int, duration: int = 800) -> None:
        logger.info(f"Performing swipe from ({start_x}, {start_y}) to ({end_x}, {end_y}) with duration {duration}")
        self._driver().swipe(start_x, start_y, end_x, end_y, duration)

    def get_viewport_size(self) -> Dict[str, int]:
        size = self._driver().get_window_size()
        return {"width": int(size["width"]), "height": int(size["height"])}

    def scroll(self, direction: str) -> None:
        """Scroll content by half a screen; `down` reveals content further down."""
        viewport = self.get_viewport_size()
        x = viewport["width"] // 2
        upper = viewport["height"] // 4
        lower = viewport["height"] * 3 // 4
        if direction == "down":
            self.perform_swipe(x, lower, x, upper, 500)
        else:
            self.perform_swipe(x, upper, x, lower, 500)

    def press_back(self) -> None:
        self._driver().back()

    def press_home(self) -> None:
        driver = self._driver()
        if self.device.platform == "android":
            driver.press_keycode(ANDROID_KEYCODE_HOME)
        else:
            driver.execute_script("mobile: pressButton", {"name": "home"})

    # ─── ACCESSIBILITY TREE SNAPSHOT ───────────────────────────────────────────

    def get_page_source(self) -> str:
        return self._driver().page_source
