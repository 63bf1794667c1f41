import io
import json

import pytest

from viewcounter import __main__ as entry
from viewcounter.logging import LogLevel, ViewCounterLogger


@pytest.fixture
def log_stream(monkeypatch):
    stream = io.StringIO()
    test_logger = ViewCounterLogger("viewcounter.main_test", LogLevel.DEBUG, stream=stream)
    monkeypatch.setattr(entry, "get_logger", lambda: test_logger)
    return stream


@pytest.fixture(autouse=True)
def env(monkeypatch, tmp_path):
    for key in ("PORT", "HOST", "RENDERER_URL", "LOG_LEVEL"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("VIEWCOUNTER_CONFIG", str(tmp_path / "missing.yml"))
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("SERVICE_USER_MAP", "github:GitHub")


def critical_entries(stream):
    entries = [json.loads(line) for line in stream.getvalue().splitlines() if line]
    return [e for e in entries if e["level"] == "CRITICAL"]


@pytest.mark.parametrize(
    "key,value",
    [
        ("DATABASE_URL", "not a database url"),
        ("DATABASE_URL", "nosuchdialect://host/db"),
        ("PORT", "not-a-port"),
        ("RENDERER_URL", "ftp://nowhere"),
    ],
)
def test_startup_failure_logs_critical_and_exits_one(monkeypatch, log_stream, key, value):
    monkeypatch.setenv(key, value)

    assert entry.main() == 1

    critical = critical_entries(log_stream)
    assert len(critical) == 1
    assert critical[0]["event_type"] == "gateway_error"
    assert critical[0]["message"].startswith("startup failed")


def test_missing_required_setting_exits_one(monkeypatch, log_stream):
    monkeypatch.delenv("SERVICE_USER_MAP")

    assert entry.main() == 1
    assert critical_entries(log_stream)[0]["metadata"]["error_type"] == "ConfigError"


def test_clean_shutdown_exits_zero(monkeypatch, log_stream):
    created = []

    class StoppedLifecycle:
        def __init__(self, config, logger):
            created.append(config)

        async def run(self):
            return 0

    monkeypatch.setattr(entry, "Lifecycle", StoppedLifecycle)

    assert entry.main() == 0
    assert created[0].service_user_map == {"github": "GitHub"}
    assert critical_entries(log_stream) == []
