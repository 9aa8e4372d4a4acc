"""Database-backed chat logs: several requests working on one chat at once."""

import asyncio

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from narrative_tracker.models import Base, Chat
from narrative_tracker.services.chat_store import append_message, get_chat, load_chat_log
from narrative_tracker.services.tracker import ExtractionStatus, TrackerService
from narrative_tracker.state.message_state import get_message_state
from narrative_tracker.state.narrative_state import get_narrative_state, get_relationship

from fakes import BlockingGenerator, FakeGenerator, make_settings, story_script


@pytest.fixture
def sessions(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tracker.db'}", poolclass=NullPool)

    async def create_tables():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(create_tables())
    try:
        yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    finally:
        asyncio.run(engine.dispose())


async def seed_chat(sessions, chat_id="tavern", turns=4):
    async with sessions() as session:
        session.add(Chat(id=chat_id, title="Tavern", character_info="Elena is a reformed thief."))
        await session.commit()
        for i in range(turns):
            chat = await get_chat(session, chat_id)
            if i % 2 == 0:
                await append_message(session, chat, "Marcus", f"Marcus says line {i}.", True)
            else:
                await append_message(session, chat, "Elena", f"Elena answers line {i}.", False)


async def load_fresh(sessions, chat_id="tavern"):
    async with sessions() as session:
        return await load_chat_log(session, chat_id)


def stored_flags(log):
    return [get_message_state(message) is not None for message in log.messages]


class TestSeparateRequests:

    def test_each_request_writes_only_its_own_message(self, sessions):
        service = TrackerService(generator=FakeGenerator(story_script()), settings=make_settings())

        async def scenario():
            await seed_chat(sessions)
            async with sessions() as first, sessions() as second:
                log_a = await load_chat_log(first, "tavern")
                log_b = await load_chat_log(second, "tavern")
                a = await service.extract_message("tavern", log_a, 1)
                b = await service.extract_message("tavern", log_b, 3)
            return a, b, await load_fresh(sessions)

        a, b, log = asyncio.run(scenario())

        assert (a.status, b.status) == (ExtractionStatus.success, ExtractionStatus.success)
        assert stored_flags(log) == [False, True, False, True]
        relationship = get_relationship(get_narrative_state(log), "Elena", "Marcus")
        assert [(m.type, m.message_id) for m in relationship.milestones] == [
            ("first_meeting", 1), ("confession", 1),
        ]

    def test_overlapping_runs_keep_each_others_results(self, sessions):
        generator = BlockingGenerator(story_script())
        service = TrackerService(generator=generator, settings=make_settings())

        async def scenario():
            await seed_chat(sessions, turns=6)
            async with sessions() as first, sessions() as second:
                log_a = await load_chat_log(first, "tavern")
                log_b = await load_chat_log(second, "tavern")
                slow = asyncio.create_task(service.extract_message("tavern", log_a, 1))
                await generator.started.wait()
                fast = await service.extract_message("tavern", log_b, 5)
                generator.release.set()
                return await slow, fast, await load_fresh(sessions)

        slow, fast, log = asyncio.run(scenario())

        assert (slow.status, fast.status) == (ExtractionStatus.success, ExtractionStatus.success)
        assert stored_flags(log) == [False, True, False, False, False, True]
        assert get_relationship(get_narrative_state(log), "Elena", "Marcus") is not None
