"""
Read-only view over a campaign's nodes and choices.

Nodes and choice lists are fetched on first use and memoised for the
lifetime of the graph object, so a single request never sees two versions
of the same node.
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chronicles.database.models import Campaign, NodeChoice, NodeType, StoryNode
from chronicles.errors import GraphLookupError

logger = logging.getLogger(__name__)


class StoryGraph:
    def __init__(self, session: AsyncSession, campaign_id: Optional[int] = None):
        self.session = session
        self.campaign_id = campaign_id
        self._nodes: Dict[int, StoryNode] = {}
        self._choices: Dict[int, List[NodeChoice]] = {}

    async def get_campaign(self, campaign_id: Optional[int] = None) -> Campaign:
        campaign_id = campaign_id if campaign_id is not None else self.campaign_id
        campaign = await self.session.get(Campaign, campaign_id) if campaign_id is not None else None
        if not campaign:
            logger.error(f"Campaign not found: {campaign_id}")
            raise GraphLookupError("campaign", campaign_id)
        return campaign

    async def get_node(self, node_id: int) -> StoryNode:
        """Return the node or raise ``GraphLookupError``."""
        if node_id in self._nodes:
            return self._nodes[node_id]

        node = await self.session.get(StoryNode, node_id) if node_id is not None else None
        if not node or (self.campaign_id is not None and node.campaign_id != self.campaign_id):
            logger.error(f"Story node not found: {node_id} (campaign {self.campaign_id})")
            raise GraphLookupError("node", node_id)

        self._nodes[node_id] = node
        return node

    async def get_choices(self, node_id: int) -> List[NodeChoice]:
        """Outgoing choices of a node in authoring order. Empty means terminal."""
        if node_id in self._choices:
            return list(self._choices[node_id])

        await self.get_node(node_id)
        stmt = (
            select(NodeChoice)
            .where(NodeChoice.node_id == node_id)
            .order_by(NodeChoice.order_index, NodeChoice.id)
        )
        result = await self.session.execute(stmt)
        choices = list(result.scalars().all())
        self._choices[node_id] = choices
        return list(choices)

    async def get_choice(self, choice_id: int) -> NodeChoice:
        choice = await self.session.get(NodeChoice, choice_id)
        if not choice:
            raise GraphLookupError("choice", choice_id)
        # Validates that the owning node belongs to this campaign
        await self.get_node(choice.node_id)
        return choice

    async def is_terminal(self, node: StoryNode) -> bool:
        if node.node_type == NodeType.ENDING:
            return True
        return not await self.get_choices(node.id)
