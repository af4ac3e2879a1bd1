import logging

import pytest

import settings as settings_mod
from settings import ScannerSettings, configure_logging

ENV_VARS = [
    "REDEEM_BACKEND_URL",
    "REDEEM_VERIFY_PATH",
    "REDEEM_SESSION_TOKEN",
    "REDEEM_VERIFY_TIMEOUT",
    "SCANNER_BACKEND",
    "SCANNER_CAMERAS_ENVIRONMENT",
    "SCANNER_CAMERAS_USER",
    "SCANNER_FACING",
    "SCANNER_FRAME_WIDTH",
    "SCANNER_FRAME_HEIGHT",
    "SCANNER_REFRESH_HZ",
    "SCANNER_SNAPSHOT_MAX_DIM",
    "SCANNER_RESCAN_COOLDOWN_S",
    "LOG_LEVEL",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return tmp_path / "missing.env"


def test_defaults(clean_env):
    s = ScannerSettings.from_env(clean_env)
    assert s == ScannerSettings()
    assert s.verify_url is None
    assert s.tick_interval_s == pytest.approx(1 / 30)


def test_reads_environment(clean_env, monkeypatch):
    monkeypatch.setenv("REDEEM_BACKEND_URL", "https://api.example.test/")
    monkeypatch.setenv("REDEEM_SESSION_TOKEN", "tok")
    monkeypatch.setenv("REDEEM_VERIFY_TIMEOUT", "2.5")
    monkeypatch.setenv("SCANNER_BACKEND", "PYZBAR")
    monkeypatch.setenv("SCANNER_FACING", "user")
    monkeypatch.setenv("SCANNER_CAMERAS_USER", "2, 3")
    monkeypatch.setenv("SCANNER_REFRESH_HZ", "10")
    monkeypatch.setenv("SCANNER_RESCAN_COOLDOWN_S", "15")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    s = ScannerSettings.from_env(clean_env)

    assert s.verify_url == "https://api.example.test/redemption/verify-token"
    assert s.session_token == "tok"
    assert s.verify_timeout_s == 2.5
    assert s.decoder_backend == "pyzbar"
    assert s.facing == "user"
    assert s.user_cameras == (2, 3)
    assert s.tick_interval_s == pytest.approx(0.1)
    assert s.rescan_cooldown_s == 15.0
    assert s.log_level == "DEBUG"


def test_dotenv_file_is_loaded(clean_env, tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text("REDEEM_BACKEND_URL=https://from-dotenv.test\n", encoding="utf-8")
    # register the variable so monkeypatch removes what load_dotenv writes
    monkeypatch.setenv("REDEEM_BACKEND_URL", "")
    monkeypatch.delenv("REDEEM_BACKEND_URL")

    s = ScannerSettings.from_env(env_file)

    assert s.backend_url == "https://from-dotenv.test"


@pytest.mark.parametrize("name, value", [
    ("SCANNER_BACKEND", "opencv"),
    ("SCANNER_FACING", "sideways"),
    ("SCANNER_FRAME_WIDTH", "wide"),
    ("REDEEM_VERIFY_TIMEOUT", "soon"),
    ("SCANNER_CAMERAS_ENVIRONMENT", "0,back"),
])
def test_invalid_values_name_the_variable(clean_env, monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=name):
        ScannerSettings.from_env(clean_env)


def test_verify_url_joins_without_double_slash():
    s = ScannerSettings(backend_url="http://host:8080/api/", verify_path="/v1/check")
    assert s.verify_url == "http://host:8080/api/v1/check"


def test_zero_refresh_rate_means_no_delay():
    assert ScannerSettings(refresh_hz=0).tick_interval_s == 0.0


def test_configure_logging_only_adjusts_level_after_first_call(monkeypatch):
    monkeypatch.setattr(settings_mod, "_logging_configured", True)
    root = logging.getLogger()
    previous = root.level
    handlers = list(root.handlers)
    try:
        configure_logging("warning")
        assert root.level == logging.WARNING
        assert root.handlers == handlers
    finally:
        root.setLevel(previous)
