"""Фикстуры: справочники по умолчанию в памяти, движок и клиент API поверх них."""
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from preturi.data.catalog import (
    default_departments,
    default_instruments,
    default_parts,
    default_pipelines,
    default_services,
)
from preturi.entities import Catalog, ServiceFile
from preturi.services.engine import PreturiEngine
from preturi.services.notifications import RecordingNotifier
from preturi.services.pricing import PricingRates
from preturi.store.memory import InMemoryStore

SERVICE_FILE_ID = "sf-1"
LEAD_ID = "lead-1"


@pytest.fixture
def rates():
    return PricingRates(urgent_rate=Decimal("0.30"), services_rate=Decimal("0.10"), parts_rate=Decimal("0.05"))


@pytest.fixture
def catalog():
    """Справочники по умолчанию как Catalog (без хранилища)."""
    return Catalog(
        instruments={i.id: i for i in default_instruments()},
        services={s.id: s for s in default_services()},
        parts={p.id: p for p in default_parts()},
        departments={d.id: d for d in default_departments()},
        pipelines={p.id: p for p in default_pipelines()},
    )


@pytest.fixture
def store():
    """Хранилище в памяти со справочниками по умолчанию и одной fișă."""
    s = InMemoryStore().load_catalog(
        departments=default_departments(),
        pipelines=default_pipelines(),
        instruments=default_instruments(),
        services=default_services(),
        parts=default_parts(),
    )
    s.add_service_file(ServiceFile(id=SERVICE_FILE_ID, lead_id=LEAD_ID, number="F-1"))
    return s


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(store, notifier, rates):
    return PreturiEngine(store, notifier=notifier, rates=rates)


@pytest.fixture
def client(engine):
    """Тестовый клиент приложения; движок запросов работает на хранилище в памяти."""
    from preturi.api.deps import get_engine
    from preturi.main import app

    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()
