from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select

from database import Base, get_db
from main import app
from models.detection import Detection
from models.user import User
from services.detections import purge_expired_detections
from services.session_token import create_session_token


OWNER_ID = "history-owner"
OTHER_ID = "history-other"
OWNER_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(OWNER_ID)}"}
OTHER_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(OTHER_ID)}"}
NOW = datetime(2026, 10, 1, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def history_client(tmp_path):
    db_path = tmp_path / "detections.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with session_maker() as session:
        session.add_all(
            [
                User(id=OWNER_ID, email="owner@example.com", credits=100),
                User(id=OTHER_ID, email="other@example.com", credits=100),
                Detection(
                    id="det-text",
                    user_id=OWNER_ID,
                    source_type="text",
                    input_type="detect",
                    input_preview="The quick brown fox",
                    raw_score=35.0,
                    ai_score=65.0,
                    sentences=[{"text": "The quick brown fox", "score": 35.0}],
                    credits_used=4,
                    created_at=NOW - timedelta(days=45),
                ),
                Detection(
                    id="det-url",
                    user_id=OWNER_ID,
                    source_type="url",
                    input_type="plagiarism",
                    input_preview="https://example.com/post",
                    credits_used=120,
                    created_at=NOW - timedelta(days=2),
                ),
                Detection(
                    id="det-other",
                    user_id=OTHER_ID,
                    source_type="text",
                    input_type="summarize",
                    credits_used=3,
                    created_at=NOW - timedelta(days=100),
                ),
            ]
        )
        await session.commit()

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker

    app.dependency_overrides.pop(get_db, None)
    await engine.dispose()


async def _ids(session_maker):
    async with session_maker() as session:
        return sorted((await session.execute(select(Detection.id))).scalars().all())


@pytest.mark.asyncio
async def test_history_requires_session(history_client):
    client, _ = history_client
    response = await client.get("/detections")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_list_is_scoped_newest_first_and_filterable(history_client):
    client, _ = history_client
    response = await client.get("/detections", headers=OWNER_AUTH_HEADER)
    assert response.status_code == 200
    payload = response.json()
    assert payload["total"] == 2
    assert [item["id"] for item in payload["items"]] == ["det-url", "det-text"]

    filtered = await client.get("/detections", params={"source_type": "text"}, headers=OWNER_AUTH_HEADER)
    assert [item["id"] for item in filtered.json()["items"]] == ["det-text"]


@pytest.mark.asyncio
async def test_get_returns_sentences_and_hides_other_users(history_client):
    client, _ = history_client
    response = await client.get("/detections/det-text", headers=OWNER_AUTH_HEADER)
    assert response.status_code == 200
    assert response.json()["sentences"][0]["text"] == "The quick brown fox"

    hidden = await client.get("/detections/det-other", headers=OWNER_AUTH_HEADER)
    assert hidden.status_code == 404


@pytest.mark.asyncio
async def test_delete_single_and_all(history_client):
    client, session_maker = history_client
    response = await client.delete("/detections/det-url", headers=OWNER_AUTH_HEADER)
    assert response.status_code == 200
    assert await _ids(session_maker) == ["det-other", "det-text"]

    missing = await client.delete("/detections/det-url", headers=OWNER_AUTH_HEADER)
    assert missing.status_code == 404

    cleared = await client.delete("/detections", headers=OWNER_AUTH_HEADER)
    assert cleared.json()["deleted"] == 1
    assert await _ids(session_maker) == ["det-other"]


@pytest.mark.asyncio
async def test_retention_accepts_only_supported_windows(history_client):
    client, session_maker = history_client
    rejected = await client.put("/detections/retention", json={"retention_days": 7}, headers=OWNER_AUTH_HEADER)
    assert rejected.status_code == 422

    accepted = await client.put("/detections/retention", json={"retention_days": 30}, headers=OWNER_AUTH_HEADER)
    assert accepted.status_code == 200
    async with session_maker() as session:
        owner = await session.get(User, OWNER_ID)
    assert owner.metadata_json["retentionDays"] == 30


@pytest.mark.asyncio
async def test_purge_honours_each_users_retention(history_client):
    client, session_maker = history_client
    await client.put("/detections/retention", json={"retention_days": 30}, headers=OWNER_AUTH_HEADER)

    async with session_maker() as session:
        removed = await purge_expired_detections(session, now=NOW)

    # owner keeps 30 days; other falls back to the 90 day default
    assert removed == 2
    assert await _ids(session_maker) == ["det-url"]
