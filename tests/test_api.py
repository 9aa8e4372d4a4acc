"""HTTP surface tests against a throwaway SQLite database and a scripted generator."""

import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from narrative_tracker.app import app
from narrative_tracker.database import get_db
from narrative_tracker.errors import GeneratorError
from narrative_tracker.models import Base
from narrative_tracker.services.tracker import TrackerService, get_tracker_service

from fakes import FakeGenerator, make_settings, story_script


@pytest.fixture
def generator():
    return FakeGenerator(story_script())


@pytest.fixture
def client(tmp_path, generator):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tracker.db'}", poolclass=NullPool)

    async def create_tables():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(create_tables())
    sessions = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    async def override_db():
        async with sessions() as session:
            yield session

    service = TrackerService(generator=generator, settings=make_settings())
    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_tracker_service] = lambda: service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        asyncio.run(engine.dispose())


def new_chat(client, turns=2):
    chat = client.post("/chats", json={
        "title": "Tavern",
        "character_name": "Elena",
        "user_name": "Marcus",
        "character_info": "Elena is a reformed thief.",
    }).json()
    for i in range(turns):
        if i % 2 == 0:
            body = {"name": "Marcus", "mes": f"Marcus says line {i}.", "is_user": True}
        else:
            body = {"name": "Elena", "mes": f"Elena answers line {i}."}
        assert client.post(f"/chats/{chat['id']}/messages", json=body).status_code == 200
    return chat["id"]


class TestChats:

    def test_create_and_fetch(self, client):
        chat_id = new_chat(client)
        data = client.get(f"/chats/{chat_id}").json()
        assert data["title"] == "Tavern"
        assert [m["message_id"] for m in data["messages"]] == [0, 1]
        assert not any(m["has_state"] for m in data["messages"])

    def test_unknown_chat(self, client):
        assert client.get("/chats/nope").status_code == 404
        assert client.post("/chats/nope/messages/0/extract").status_code == 404

    def test_message_out_of_range(self, client):
        chat_id = new_chat(client)
        assert client.post(f"/chats/{chat_id}/messages/5/extract").status_code == 404


class TestExtraction:

    def test_extract_stores_state(self, client):
        chat_id = new_chat(client)
        response = client.post(f"/chats/{chat_id}/messages/1/extract")
        assert response.status_code == 200
        body = response.json()
        assert body["state"]["location"]["place"] == "The Rusty Anchor"
        assert body["reconciled"] == []

        stored = client.get(f"/chats/{chat_id}/messages/1/state").json()
        assert stored["state"]["scene"]["topic"] == "Elena's confession"
        assert stored["extracted_at"]
        assert client.get(f"/chats/{chat_id}").json()["messages"][1]["has_state"]

    def test_narrative_after_extraction(self, client):
        chat_id = new_chat(client)
        client.post(f"/chats/{chat_id}/messages/1/extract")
        narrative = client.get(f"/chats/{chat_id}/narrative").json()["narrative"]
        assert [r["pair"] for r in narrative["relationships"]] == [["Elena", "Marcus"]]

    def test_narrative_before_extraction_is_empty(self, client):
        chat_id = new_chat(client)
        narrative = client.get(f"/chats/{chat_id}/narrative").json()["narrative"]
        assert narrative["relationships"] == []
        assert narrative["chapters"] == []

    def test_state_of_unextracted_message(self, client):
        chat_id = new_chat(client)
        assert client.get(f"/chats/{chat_id}/messages/0/state").json()["state"] is None

    def test_re_extraction_reports_reconciled_messages(self, client, generator):
        chat_id = new_chat(client, turns=4)
        client.post(f"/chats/{chat_id}/messages/1/extract")
        client.post(f"/chats/{chat_id}/messages/3/extract")

        generator.script["event"] = dict(story_script()["event"], summary="Elena lied.")
        body = client.post(f"/chats/{chat_id}/messages/1/extract").json()
        assert body["reconciled"] == [3]

        later = client.get(f"/chats/{chat_id}/messages/3/state").json()["state"]["current_events"]
        assert later[0]["summary"] == "Elena lied."

    def test_generator_failure_is_bad_gateway(self, client, generator):
        generator.script["time"] = GeneratorError("quota exhausted")
        chat_id = new_chat(client)
        response = client.post(f"/chats/{chat_id}/messages/1/extract")
        assert response.status_code == 502
        assert client.get(f"/chats/{chat_id}/messages/1/state").json()["state"] is None

    def test_abort_without_running_extraction(self, client):
        chat_id = new_chat(client)
        body = client.post(f"/chats/{chat_id}/messages/1/abort").json()
        assert body == {"message_id": 1, "aborted": False}

    def test_missing_model_is_bad_request(self, client):
        service = TrackerService(generator=FakeGenerator(story_script()), settings=make_settings(extraction_model=""))
        app.dependency_overrides[get_tracker_service] = lambda: service
        chat_id = new_chat(client)
        response = client.post(f"/chats/{chat_id}/messages/1/extract")
        assert response.status_code == 400
        assert "EXTRACTION_MODEL" in response.json()["detail"]
