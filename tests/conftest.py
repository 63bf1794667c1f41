import pytest
from fastapi.testclient import TestClient

from viewcounter.app import create_app
from viewcounter.config import ViewCounterConfig
from viewcounter.logging import LogLevel, ViewCounterLogger
from viewcounter.persistence import DatabaseManager
from viewcounter.transport import build_client


@pytest.fixture
def config():
    return ViewCounterConfig(
        database_url="sqlite://",
        service_user_map={"github": "GitHub", "gitlab": "GitLab"},
    )


@pytest.fixture
def test_logger():
    return ViewCounterLogger("viewcounter.test", LogLevel.DEBUG)


@pytest.fixture
def database():
    db = DatabaseManager("sqlite://")
    db.connect()
    yield db
    db.close()


@pytest.fixture
def app(config, database, test_logger):
    return create_app(config, database, build_client(), logger=test_logger)


@pytest.fixture
def client(app):
    return TestClient(app)
