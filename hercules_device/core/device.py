"""Device discovery and selection for the daemon's `open` command."""

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Mapping, Optional

from hercules_device.core.errors import AppError, ErrorCode
from hercules_device.utils.exec_helper import run_cmd
from hercules_device.utils.logger import logger

Platform = Literal["ios", "android"]
DeviceKind = Literal["simulator", "emulator", "device"]


@dataclass(frozen=True)
class DeviceInfo:
    platform: Platform
    id: str
    name: str
    kind: DeviceKind
    booted: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"platform": self.platform, "id": self.id, "name": self.name, "kind": self.kind, "booted": self.booted}


class DeviceResolver:
    """Lists simulators/emulators/devices through `xcrun simctl` and `adb` and picks one from request flags."""

    async def list_ios_simulators(self) -> List[DeviceInfo]:
        result = await run_cmd("xcrun", ["simctl", "list", "devices", "--json"], allow_failure=True, timeout=30)
        if result.exit_code != 0:
            logger.debug(f"simctl unavailable: {result.stderr.strip()}")
            return []
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.warning("Could not decode simctl device list")
            return []
        devices: List[DeviceInfo] = []
        for runtime, entries in data.get("devices", {}).items():
            if "iOS" not in runtime:
                continue
            for entry in entries:
                if entry.get("isAvailable") is False:
                    continue
                devices.append(
                    DeviceInfo(
                        platform="ios",
                        id=entry.get("udid", ""),
                        name=entry.get("name", ""),
                        kind="simulator",
                        booted=entry.get("state") == "Booted",
                    )
                )
        return devices

    async def list_android_devices(self) -> List[DeviceInfo]:
        result = await run_cmd("adb", ["devices", "-l"], allow_failure=True, timeout=30)
        if result.exit_code != 0:
            logger.debug(f"adb unavailable: {result.stderr.strip()}")
            return []
        devices: List[DeviceInfo] = []
        for line in result.stdout.splitlines()[1:]:
            parts = line.split()
            if len(parts) < 2 or parts[1] != "device":
                continue
            serial = parts[0]
            name = serial
            for part in parts[2:]:
                if part.startswith("model:"):
                    name = part.split(":", 1)[1].replace("_", " ")
            devices.append(
                DeviceInfo(
                    platform="android",
                    id=serial,
                    name=name,
                    kind="emulator" if serial.startswith("emulator-") else "device",
                    booted=True,
                )
            )
        return devices

    async def resolve_target_device(self, flags: Mapping[str, Any]) -> DeviceInfo:
        platform = flags.get("platform")
        if platform not in (None, "ios", "android"):
            raise AppError(ErrorCode.INVALID_ARGS, f"Unknown platform: {platform}")

        candidates: List[DeviceInfo] = []
        if platform in (None, "ios") and not flags.get("serial"):
            candidates.extend(await self.list_ios_simulators())
        if platform in (None, "android") and not flags.get("udid"):
            candidates.extend(await self.list_android_devices())

        return select_device(candidates, flags)


def select_device(candidates: List[DeviceInfo], flags: Mapping[str, Any]) -> DeviceInfo:
    """Pick by udid/serial, then by name, then the first booted device."""
    wanted_id = flags.get("udid") or flags.get("serial")
    if wanted_id:
        for device in candidates:
            if device.id == wanted_id:
                return device
        raise AppError(ErrorCode.INVALID_ARGS, f"No device with id {wanted_id}")

    wanted_name: Optional[str] = flags.get("device")
    if wanted_name:
        needle = wanted_name.strip().lower()
        matches = [device for device in candidates if device.name.lower() == needle]
        booted = [device for device in matches if device.booted]
        if booted or matches:
            return (booted or matches)[0]
        raise AppError(ErrorCode.INVALID_ARGS, f"No device named {wanted_name}")

    for device in candidates:
        if device.booted:
            return device
    raise AppError(ErrorCode.INVALID_ARGS, "No booted device found", {"platform": flags.get("platform")})
