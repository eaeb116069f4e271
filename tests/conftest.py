import pytest
import pytest_asyncio
from sqlalchemy import select

from chronicles.database import setup as db_setup
from chronicles.database.models import Campaign, Character, NodeChoice, StoryNode
from chronicles.services.campaign_loader import CampaignLoader
from chronicles.services.sync_channel import SyncChannel, get_sync_channel
from chronicles.utils.config import DEFAULT_STATS

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class World:
    """Builds campaigns and characters for a test and looks rows up by authoring key."""

    def __init__(self, session):
        self.session = session

    async def campaign(self, data: dict) -> Campaign:
        return await CampaignLoader(self.session).load_campaign(data)

    async def character(self, user_id: int, name: str = "Hero", **stats) -> Character:
        character = Character(
            user_id=user_id,
            name=name,
            stats={**DEFAULT_STATS, **stats},
            xp=0,
            level=1,
        )
        self.session.add(character)
        await self.session.commit()
        return character

    async def node(self, campaign: Campaign, key: str) -> StoryNode:
        stmt = select(StoryNode).where(StoryNode.campaign_id == campaign.id, StoryNode.key == key)
        return (await self.session.execute(stmt)).scalars().one()

    async def choice(self, campaign: Campaign, node_key: str, text: str) -> NodeChoice:
        node = await self.node(campaign, node_key)
        stmt = select(NodeChoice).where(NodeChoice.node_id == node.id, NodeChoice.choice_text == text)
        return (await self.session.execute(stmt)).scalars().one()


@pytest_asyncio.fixture
async def session_factory():
    await db_setup.init_db(TEST_DATABASE_URL)
    yield db_setup.get_session_factory()
    await db_setup.close_db()


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def world(session):
    return World(session)


@pytest.fixture
def channel():
    return SyncChannel()


@pytest.fixture(autouse=True)
def clean_sync_channel():
    """The process wide channel must not leak subscribers between tests."""
    get_sync_channel().clear()
    yield
    get_sync_channel().clear()
