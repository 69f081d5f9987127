import pytest

from optimat.models import Provider
from optimat.storage import Storage
from tests.factories import FAR_AWAY_ZONE, make_provider


@pytest.fixture
def providers() -> list[Provider]:
    return [
        make_provider(1, "East Bay Paratransit"),
        make_provider(
            2,
            "Weekend Shuttle",
            service_hours={"hours": [{"day": "0000011", "start": "0600", "end": "2000"}]},
        ),
        make_provider(3, "Los Angeles Access", service_zone=FAR_AWAY_ZONE),
    ]


@pytest.fixture
def storage(tmp_path) -> Storage:
    store = Storage(tmp_path / "optimat.db")
    yield store
    store.close()


@pytest.fixture
def seeded_storage(storage, providers) -> Storage:
    for provider in providers:
        storage.upsert_provider(provider)
    return storage
