from __future__ import annotations

from io import BytesIO

import pytest
from fastapi.testclient import TestClient
from openpyxl import load_workbook
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from estimate_acts.database import Base, TenantSession, enable_sqlite_savepoints, get_session
from estimate_acts.main import app, get_reference_cache
from estimate_acts.orm_models import WorkCompletionActORM
from estimate_acts.reference_cache import InMemoryReferenceCache
from estimate_acts.services.auth import create_access_token
from estimate_acts.tenant_scoping import setup_tenant_events

TENANT_ID = "tenant-a"


def _auth(tenant_id: str = TENANT_ID) -> dict:
    return {"Authorization": f"Bearer {create_access_token('user-1', tenant_id)}"}


class CommittedActsCache(InMemoryReferenceCache):
    """Counts the acts another connection can see each time entries are dropped."""

    def __init__(self, factory) -> None:
        super().__init__()
        self._factory = factory
        self.visible_acts: list[int] = []

    def invalidate(self, prefix: str) -> int:
        with self._factory() as other:
            count = other.execute(select(func.count()).select_from(WorkCompletionActORM)).scalar_one()
        self.visible_acts.append(count)
        return super().invalidate(prefix)


@pytest.fixture()
def cache():
    return InMemoryReferenceCache()


@pytest.fixture()
def session_factory(tmp_path):
    # File database: a second connection sees committed rows only.
    engine = create_engine(
        f"sqlite:///{tmp_path / 'acts.db'}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    enable_sqlite_savepoints(engine)
    TestingSession = type("TestingSession", (TenantSession,), {})
    setup_tenant_events(TestingSession)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True, class_=TestingSession)


@pytest.fixture()
def client(seed_estimate, session_factory, cache):
    factory = session_factory
    with factory() as seed:
        seed.info["tenant_id"] = TENANT_ID
        seed_estimate(seed)
        seed.commit()

    def override_session():
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_reference_cache] = lambda: cache
    yield TestClient(app)
    app.dependency_overrides.clear()


def _complete(client, item_id: str, quantity: float) -> None:
    response = client.post(
        "/estimates/est-1/work-completions",
        json={"estimateItemId": item_id, "completed": True, "actualQuantity": quantity},
        headers=_auth(),
    )
    assert response.status_code == 200, response.text


def _generate(client, act_type: str = "client"):
    return client.post(
        "/work-completion-acts/generate",
        json={
            "estimateId": "est-1",
            "projectId": "proj-1",
            "actType": act_type,
            "actDate": "2024-03-31",
            "periodFrom": "2024-03-01",
        },
        headers=_auth(),
    )


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_requires_token(client):
    response = client.get("/estimates/est-1/work-completions")
    assert response.status_code == 401

    response = client.get("/estimates/est-1/work-completions", headers={"Authorization": "Bearer broken"})
    assert response.status_code == 401


def test_generate_without_completed_works(client):
    response = _generate(client)

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "no_completed_works"


def test_generate_and_fetch_act(client):
    _complete(client, "item-1-1", 10)
    _complete(client, "item-1-3", 2)

    response = _generate(client)

    assert response.status_code == 201
    act = response.json()["clientAct"]
    assert act["actNumber"] == "ACT-CL-2024-001"
    assert act["totalAmount"] == 4000.0

    detail = client.get(f"/work-completion-acts/{act['id']}", headers=_auth())
    assert detail.status_code == 200
    assert len(detail.json()["items"]) == 2

    ks2 = client.get(f"/work-completion-acts/{act['id']}/forms/ks2", headers=_auth())
    assert ks2.json()["period"]["from"] == "2024-03-01"


def test_other_tenant_cannot_see_act(client):
    _complete(client, "item-1-1", 10)
    act_id = _generate(client).json()["clientAct"]["id"]

    response = client.get(f"/work-completion-acts/{act_id}", headers=_auth("tenant-b"))

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "not_found"


def test_act_list_cache_is_invalidated_by_writes(client, cache):
    empty = client.get("/work-completion-acts/estimate/est-1", headers=_auth())
    assert empty.json()["count"] == 0

    _complete(client, "item-1-1", 10)
    act_id = _generate(client).json()["clientAct"]["id"]

    listed = client.get("/work-completion-acts/estimate/est-1", headers=_auth())
    assert listed.json()["count"] == 1

    client.patch(f"/work-completion-acts/{act_id}/status", json={"status": "approved"}, headers=_auth())
    listed = client.get("/work-completion-acts/estimate/est-1?actType=client", headers=_auth())
    assert listed.json()["acts"][0]["status"] == "approved"

    deleted = client.delete(f"/work-completion-acts/{act_id}", headers=_auth())
    assert deleted.status_code == 204
    assert client.get("/work-completion-acts/estimate/est-1", headers=_auth()).json()["count"] == 0


def test_cache_is_invalidated_after_commit(client, session_factory):
    committed = CommittedActsCache(session_factory)
    app.dependency_overrides[get_reference_cache] = lambda: committed

    _complete(client, "item-1-1", 10)
    act_id = _generate(client).json()["clientAct"]["id"]
    client.delete(f"/work-completion-acts/{act_id}", headers=_auth())

    assert committed.visible_acts == [0, 1, 0]


def test_download_ks2_xlsx(client):
    _complete(client, "item-1-1", 10)
    act_id = _generate(client).json()["clientAct"]["id"]

    response = client.get(f"/work-completion-acts/{act_id}/forms/ks2/xlsx?includeVat=true", headers=_auth())

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/vnd.openxmlformats")
    disposition = response.headers["content-disposition"]
    assert disposition.startswith("attachment;")
    assert "_ACT-CL-2024-001_31-03-2024.xlsx" in disposition
    ws = load_workbook(BytesIO(response.content)).active
    assert ws["AD42"].value == "1 000,00"
    assert ws["AD43"].value == "200,00"


def test_download_ks3_xlsx(client):
    _complete(client, "item-1-2", 3)
    act_id = _generate(client).json()["clientAct"]["id"]

    response = client.get(f"/work-completion-acts/{act_id}/forms/ks3/xlsx", headers=_auth())

    assert response.status_code == 200
    ws = load_workbook(BytesIO(response.content)).active
    assert ws["AT31"].value == "600,00"


def test_completion_csv_round_trip(client):
    body = "\ufeffНаименование работ;Кол-во;Дата;Заметки\nОбратная засыпка пазух;4;;\n".encode("utf-8")

    imported = client.post("/estimates/est-1/work-completions/import", content=body, headers=_auth())
    assert imported.status_code == 200
    assert imported.json()["successCount"] == 1

    exported = client.get("/estimates/est-1/work-completions/export", headers=_auth())
    assert exported.status_code == 200
    assert exported.headers["content-type"].startswith("text/csv")
    text = exported.content.decode("utf-8")
    assert text.startswith("\ufeff")
    assert "Обратная засыпка пазух;4;" in text


def test_import_rejects_non_utf8_body(client):
    response = client.post(
        "/estimates/est-1/work-completions/import",
        content="Наименование работ;Кол-во\n".encode("cp1251"),
        headers=_auth(),
    )

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "validation_failed"


def test_batch_and_remove_completions(client):
    batch = client.post(
        "/estimates/est-1/work-completions/batch",
        json={
            "completions": [
                {"estimateItemId": "item-1-1", "completed": True, "actualQuantity": 1},
                {"estimateItemId": "item-1-2", "completed": True, "actualQuantity": 2},
            ]
        },
        headers=_auth(),
    )
    assert batch.status_code == 200
    assert batch.json()["count"] == 2

    removed = client.delete("/estimates/est-1/work-completions/item-1-1", headers=_auth())
    assert removed.status_code == 204
    missing = client.delete("/estimates/est-1/work-completions/item-1-1", headers=_auth())
    assert missing.status_code == 404
    listed = client.get("/estimates/est-1/work-completions", headers=_auth())
    assert listed.json()["count"] == 1
