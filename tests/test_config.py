import uuid

import pytest

from spotcore.config import (
    ANDROID_CLIENT_ID,
    IOS_CLIENT_ID,
    KEYMASTER_CLIENT_ID,
    ConnectConfig,
    DeviceType,
    SessionConfig,
)


def test_parse_is_case_insensitive():
    assert DeviceType.parse("Speaker") is DeviceType.SPEAKER
    assert DeviceType.parse("tv") is DeviceType.TV
    assert DeviceType.parse("AUDIODONGLE") is DeviceType.AUDIO_DONGLE


@pytest.mark.parametrize("name", ["unknown", "observer", "unknownspotify", "toaster", ""])
def test_parse_rejects_unlisted_names(name):
    with pytest.raises(ValueError):
        DeviceType.parse(name)


def test_display_names():
    assert str(DeviceType.parse("tv")) == "TV"
    assert str(DeviceType.parse("avr")) == "AVR"
    assert str(DeviceType.parse("carthing")) == "CarThing"
    assert str(DeviceType(100)) == "UnknownSpotify"


def test_wire_values():
    assert DeviceType.parse("speaker").value == 4
    assert DeviceType.parse("homething").value == 103


@pytest.mark.parametrize(
    "member",
    [m for m in DeviceType if m not in (DeviceType.UNKNOWN, DeviceType.OBSERVER, DeviceType.UNKNOWN_SPOTIFY)],
)
def test_display_name_parses_back(member):
    assert DeviceType.parse(str(member)) is member


def test_connect_config_defaults():
    config = ConnectConfig()
    assert config.name == "Librespot"
    assert config.device_type is DeviceType.SPEAKER
    assert config.initial_volume == 50
    assert config.has_volume_ctrl is True


def test_session_config_defaults():
    first, second = SessionConfig(), SessionConfig()
    assert uuid.UUID(first.device_id).version == 4
    assert first.device_id != second.device_id
    assert first.client_id in {KEYMASTER_CLIENT_ID, ANDROID_CLIENT_ID, IOS_CLIENT_ID}
    assert first.proxy is None and first.ap_port is None and first.autoplay is None
    assert first.tmp_dir.is_dir()