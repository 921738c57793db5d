import os
import uuid
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

os.environ.setdefault("ENV", "test")
os.environ.setdefault("DINEIN_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("OMISE_SECRET_KEY", "skey_test_dummy")

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from apps.dinein.app import models  # noqa: E402
from apps.dinein.app.db import Base  # noqa: E402


class RecordingNotifier:
    """Keeps every publish() call as (topic, event, payload)."""

    def __init__(self) -> None:
        self.events: List[tuple] = []

    def publish(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((topic, event, payload))

    def named(self, event: str) -> List[tuple]:
        return [e for e in self.events if e[1] == event]

    def topics(self, event: str) -> List[str]:
        return [e[0] for e in self.named(event)]


class FakeGateway:
    """In-memory stand-in for the Omise API with controllable charge states."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.charges: Dict[str, Dict[str, Any]] = {}
        self.scannable = True
        self._n = 0

    def create_source(self, amount: int, currency: str, type: str = "promptpay") -> Dict[str, Any]:
        self.calls.append(("create_source", amount, currency, type))
        self._n += 1
        src: Dict[str, Any] = {"id": f"src_test_{self._n}", "object": "source", "type": type, "amount": amount}
        if self.scannable:
            src["scannable_code"] = {"image": {"download_uri": f"https://cdn.omise.test/qr/{self._n}.png"}}
        return src

    def create_charge(
        self,
        amount: int,
        currency: str,
        source_id: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        return_uri: Optional[str] = None,
    ) -> Dict[str, Any]:
        self.calls.append(("create_charge", amount, currency, source_id, description, metadata, return_uri))
        charge_id = f"chrg_test_{self._n}"
        self.charges[charge_id] = {
            "id": charge_id,
            "object": "charge",
            "status": "pending",
            "amount": amount,
            "currency": currency,
            "source": {"id": source_id},
            "description": description,
            "metadata": metadata or {},
        }
        return dict(self.charges[charge_id])

    def retrieve_charge(self, charge_id: str) -> Dict[str, Any]:
        self.calls.append(("retrieve_charge", charge_id))
        return dict(self.charges[charge_id])

    def set_status(self, charge_id: str, status: str) -> None:
        self.charges[charge_id]["status"] = status

    def count(self, name: str) -> int:
        return len([c for c in self.calls if c[0] == name])


def _engine():
    return create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )


@pytest.fixture()
def engine():
    eng = _engine()
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def db(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


def seed_restaurant(s: Session) -> SimpleNamespace:
    """One branch with two tables and three menu items."""
    branch = models.Branch(id=str(uuid.uuid4()), name="Siam Square", code="siam")
    other = models.Branch(id=str(uuid.uuid4()), name="Ari", code="ari")
    t1 = models.DiningTable(id=str(uuid.uuid4()), branch_id=branch.id, name="T1")
    t2 = models.DiningTable(id=str(uuid.uuid4()), branch_id=branch.id, name="T2")
    pad_thai = models.MenuItem(id=str(uuid.uuid4()), branch_id=branch.id, name="Pad Thai", price=90.0)
    tom_yum = models.MenuItem(id=str(uuid.uuid4()), branch_id=branch.id, name="Tom Yum", price=70.0)
    tea = models.MenuItem(id=str(uuid.uuid4()), branch_id=branch.id, name="Thai Tea", price=35.0)
    s.add_all([branch, other, t1, t2, pad_thai, tom_yum, tea])
    s.commit()
    return SimpleNamespace(
        branch_id=branch.id,
        other_branch_id=other.id,
        table_id=t1.id,
        table2_id=t2.id,
        pad_thai=pad_thai.id,
        tom_yum=tom_yum.id,
        tea=tea.id,
    )


@pytest.fixture()
def restaurant(db) -> SimpleNamespace:
    return seed_restaurant(db)


@pytest.fixture()
def client(engine, gateway):
    """TestClient wired to the per-test engine and the fake gateway."""
    from fastapi.testclient import TestClient

    from apps.dinein.app.db import get_session
    from apps.dinein.app.main import app
    from apps.dinein.app.payments import get_gateway

    def _session():
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
