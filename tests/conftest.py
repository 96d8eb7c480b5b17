import httpx
import pytest

from difybatch.client import DifyClient
from difybatch.db import crud
from difybatch.db.session import create_session_factory, get_db, init_db
from difybatch.events import EventDispatcher
from difybatch.queue import DispatchQueue
from tests.mocks.dify import FakeClock, FakeDifyAPI, make_dify_transport

BASE_URL = "https://dify.test/v1"


@pytest.fixture(autouse=True)
def test_set_env(monkeypatch, tmp_path):
    monkeypatch.setenv("DIFYBATCH_DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    for name in (
        "DIFYBATCH_AGGREGATION_TIMEOUT",
        "DIFYBATCH_WORKER_CONCURRENCY",
        "DIFYBATCH_QUEUE_MAXSIZE",
        "DIFYBATCH_RETRY_LEASE_SECONDS",
        "DIFYBATCH_SWEEP_INTERVAL",
        "DIFYBATCH_USER",
        "DIFYBATCH_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def session_factory(tmp_path):
    """
    Create a session factory bound to a fresh SQLite file.
    """
    factory = create_session_factory(url=f"sqlite:///{tmp_path / 'test.db'}")
    init_db(factory)
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def db(session_factory):
    with get_db(session_factory) as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_setting(session_factory, clock):
    """
    Create and activate a Dify setting.

    Returns
    -------
    typing.Callable[..., DifySetting]
        Factory accepting ``batch_threshold`` and ``timeout``.
    """

    def _make_setting(*, batch_threshold: int = 3, timeout: int = 30, name: str = "default"):
        with get_db(session_factory) as db:
            setting = crud.create_setting(
                db=db,
                name=name,
                api_key="app-test-key",
                base_url=BASE_URL,
                now=clock.now(),
                batch_threshold=batch_threshold,
                timeout=timeout,
            )
            return crud.activate_setting(db=db, setting_id=setting.id, now=clock.now())

    return _make_setting


@pytest.fixture
def dify_api() -> FakeDifyAPI:
    return FakeDifyAPI()


@pytest.fixture
def dify_client(dify_api: FakeDifyAPI) -> DifyClient:
    """
    Create a Dify client talking to the fake API.

    Returns
    -------
    DifyClient
        Client whose HTTP calls are served by ``dify_api``.
    """
    client = DifyClient(user="tester")
    transport = make_dify_transport(api=dify_api)
    client._client_factory = lambda: httpx.AsyncClient(transport=transport)
    return client


@pytest.fixture
def queue() -> DispatchQueue:
    return DispatchQueue(maxsize=100, concurrency=1)


@pytest.fixture
def events() -> EventDispatcher:
    return EventDispatcher()
