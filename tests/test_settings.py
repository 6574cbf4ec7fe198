from __future__ import annotations

import pytest

from music_vibes.core.intensity import CutoffConfig
from music_vibes.settings import DeviceProfile, Settings, parse_server_addr, to_ws_url


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("127.0.0.1:12345", ("127.0.0.1", 12345)),
        ("localhost", ("localhost", 12345)),
        ("ws://example.org:9000", ("example.org", 9000)),
        ("[::1]:8080", ("::1", 8080)),
    ],
)
def test_parse_server_addr(raw, expected) -> None:
    assert parse_server_addr(raw) == expected


@pytest.mark.parametrize("raw", ["", "http://host:1", "ws://:1234"])
def test_parse_server_addr_rejects(raw) -> None:
    with pytest.raises(ValueError):
        parse_server_addr(raw)


def test_ws_urls() -> None:
    assert to_ws_url("127.0.0.1:12345") == "ws://127.0.0.1:12345"
    assert to_ws_url("wss://example.org") == "wss://example.org:12345"
    assert to_ws_url("[::1]:1") == "ws://[::1]:1"
    assert Settings(server_addr="10.0.0.2:4000").server_url == "ws://10.0.0.2:4000"


def test_main_volume_is_squared() -> None:
    assert Settings(main_volume=0.5).main_gain == 0.25
    assert Settings().main_gain == 1.0


def test_profile_lookup_falls_back_to_default() -> None:
    edge = DeviceProfile(config=CutoffConfig(min=0.1, max=0.9, cutoff=0.05))
    s = Settings(profiles={"Lovense Edge": edge})
    assert s.profile_for("Lovense Edge") is edge
    assert s.profile_for("lovense edge") is edge
    assert s.profile_for("Something Else") is s.default_profile


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(window_ms=5.0),
        dict(window_ms=60.0),
        dict(tick_ms=0.0),
        dict(main_volume=-1.0),
        dict(server_addr="ftp://x"),
    ],
)
def test_invalid_settings(kwargs) -> None:
    with pytest.raises(ValueError):
        Settings(**kwargs)


def test_negative_multiplier_rejected() -> None:
    with pytest.raises(ValueError):
        DeviceProfile(multiplier=-0.5)
