from datetime import datetime, timedelta, timezone

import pytest

from coursepass.app import build_components, create_app
from coursepass.common.db import MemoryBackend
from coursepass.common.errors import PersistenceFailure
from coursepass.common.services.events import EventChannel, RecordingObserver
from coursepass.config import EngineConfig
from coursepass.services import MockPaymentGateway, UserRef


START = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class ScriptedRng:
    """Stands in for ``random.Random``: fixed latency, queued draws (0.0 when empty)."""

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self.draws = []

    def uniform(self, a: float, b: float) -> float:
        return self.latency

    def random(self) -> float:
        return self.draws.pop(0) if self.draws else 0.0


class FlakyBackend(MemoryBackend):
    """Memory backend whose saves fail for selected collections.

    ``failures`` is the number of saves that fail before writes succeed again;
    ``None`` keeps failing forever.
    """

    def __init__(self) -> None:
        super().__init__()
        self.failing = set()
        self.failures = None
        self.save_attempts = 0

    def fail(self, collection: str, failures=None) -> None:
        self.failing.add(collection)
        self.failures = failures

    def heal(self) -> None:
        self.failing.clear()

    def save(self, collection, records):
        if collection in self.failing:
            self.save_attempts += 1
            if self.failures is None or self.failures > 0:
                if self.failures is not None:
                    self.failures -= 1
                raise PersistenceFailure("disk unavailable", collection=collection)
        super().save(collection, records)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def rng():
    return ScriptedRng()


@pytest.fixture
def backend():
    return FlakyBackend()


@pytest.fixture
def recorder():
    return RecordingObserver()


@pytest.fixture
def events(recorder):
    channel = EventChannel()
    channel.attach(recorder)
    return channel


@pytest.fixture
def gateway(clock, rng, sleeps):
    return MockPaymentGateway(
        success_rate=1.0,
        outage_rate=0.0,
        min_latency=0.0,
        max_latency=0.0,
        timeout=10.0,
        rng=rng,
        sleep=sleeps.append,
        clock=clock,
    )


@pytest.fixture
def config(tmp_path):
    return EngineConfig(
        data_dir=tmp_path,
        storage="memory",
        sweeper_enabled=False,
        persistence_retry_delays=(0.0, 0.0),
        log_level="ERROR",
    )


@pytest.fixture
def components(config, backend, clock, gateway, events):
    return build_components(config, backend=backend, clock=clock, gateway=gateway, events=events)


@pytest.fixture
def plans(components):
    return components["plans"]


@pytest.fixture
def order_store(components):
    return components["order_store"]


@pytest.fixture
def membership_store(components):
    return components["membership_store"]


@pytest.fixture
def subscription_store(components):
    return components["subscription_store"]


@pytest.fixture
def member_store(components):
    return components["member_store"]


@pytest.fixture
def checkout(components):
    return components["checkout"]


@pytest.fixture
def sweeper(components):
    return components["sweeper"]


@pytest.fixture
def app(config, components):
    flask_app = create_app(config=config, components=components, start_sweeper=False)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def alice():
    return UserRef(user_id="u_alice", email="alice@example.com", name="Alice")


@pytest.fixture
def bob():
    return UserRef(user_id="u_bob", email="bob@example.com", name="Bob")


@pytest.fixture
def corporate_buyer():
    return UserRef(user_id="u_hr", email="hr@hsinchu-semi.example", name="HR", company_id="comp_001")
