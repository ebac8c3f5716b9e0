"""Session and Connect device configuration."""

from __future__ import annotations

import enum
import sys
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path

KEYMASTER_CLIENT_ID = "65b708073fc0480ea92a077233ca87bd"
ANDROID_CLIENT_ID = "9a8d2f0ce77a4e248bb71fefcb557637"
IOS_CLIENT_ID = "58bd3c95768941ea9eb4350aaa033eb3"


class DeviceType(enum.IntEnum):
    """The kind of device announced to other clients."""

    UNKNOWN = 0
    COMPUTER = 1
    TABLET = 2
    SMARTPHONE = 3
    SPEAKER = 4
    TV = 5
    AVR = 6
    STB = 7
    AUDIO_DONGLE = 8
    GAME_CONSOLE = 9
    CAST_AUDIO = 10
    CAST_VIDEO = 11
    AUTOMOBILE = 12
    SMARTWATCH = 13
    CHROMEBOOK = 14
    UNKNOWN_SPOTIFY = 100
    CAR_THING = 101
    OBSERVER = 102
    HOME_THING = 103

    @classmethod
    def parse(cls, text: str) -> DeviceType:
        """Parse a device type name, ignoring case."""
        try:
            return _PARSEABLE[text.lower()]
        except KeyError:
            raise ValueError(f"unknown device type: {text!r}") from None

    def __str__(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    DeviceType.UNKNOWN: "Unknown",
    DeviceType.COMPUTER: "Computer",
    DeviceType.TABLET: "Tablet",
    DeviceType.SMARTPHONE: "Smartphone",
    DeviceType.SPEAKER: "Speaker",
    DeviceType.TV: "TV",
    DeviceType.AVR: "AVR",
    DeviceType.STB: "STB",
    DeviceType.AUDIO_DONGLE: "AudioDongle",
    DeviceType.GAME_CONSOLE: "GameConsole",
    DeviceType.CAST_AUDIO: "CastAudio",
    DeviceType.CAST_VIDEO: "CastVideo",
    DeviceType.AUTOMOBILE: "Automobile",
    DeviceType.SMARTWATCH: "Smartwatch",
    DeviceType.CHROMEBOOK: "Chromebook",
    DeviceType.UNKNOWN_SPOTIFY: "UnknownSpotify",
    DeviceType.CAR_THING: "CarThing",
    DeviceType.OBSERVER: "Observer",
    DeviceType.HOME_THING: "HomeThing",
}

_PARSEABLE = {
    "computer": DeviceType.COMPUTER,
    "tablet": DeviceType.TABLET,
    "smartphone": DeviceType.SMARTPHONE,
    "speaker": DeviceType.SPEAKER,
    "tv": DeviceType.TV,
    "avr": DeviceType.AVR,
    "stb": DeviceType.STB,
    "audiodongle": DeviceType.AUDIO_DONGLE,
    "gameconsole": DeviceType.GAME_CONSOLE,
    "castaudio": DeviceType.CAST_AUDIO,
    "castvideo": DeviceType.CAST_VIDEO,
    "automobile": DeviceType.AUTOMOBILE,
    "smartwatch": DeviceType.SMARTWATCH,
    "chromebook": DeviceType.CHROMEBOOK,
    "carthing": DeviceType.CAR_THING,
    "homething": DeviceType.HOME_THING,
}


def _default_client_id() -> str:
    if sys.platform == "android":
        return ANDROID_CLIENT_ID
    if sys.platform == "ios":
        return IOS_CLIENT_ID
    return KEYMASTER_CLIENT_ID


@dataclass
class SessionConfig:
    """Settings for a session with the service."""

    client_id: str = field(default_factory=_default_client_id)
    device_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    proxy: str | None = None
    ap_port: int | None = None
    tmp_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    autoplay: bool | None = None


@dataclass
class ConnectConfig:
    """How this device presents itself to Connect clients."""

    name: str = "Librespot"
    device_type: DeviceType = DeviceType.SPEAKER
    initial_volume: int | None = 50
    has_volume_ctrl: bool = True