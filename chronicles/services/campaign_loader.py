"""
Carga de campañas desde archivos JSON.

Formato::

    {
      "title": "The Sunken Keep",
      "description": "...",
      "start_node": "gate",
      "nodes": [
        {"key": "gate", "node_type": "narrative", "title": "...", "text": "...",
         "npc_name": "...", "xp_reward": 10,
         "choices": [
           {"text": "Force the door", "target": "hall",
            "requirement": {"stat": "strength", "min_value": 7},
            "effect": {"strength": 1}}
         ]}
      ],
      "triggers": [
        {"name": "...", "trigger_type": "node_reached",
         "conditions": {"node_key": "hall"},
         "events": [{"name": "...", "event_type": "award_xp", "payload": {"amount": 25}}]}
      ]
    }

Node keys are local to the file and mapped to database ids. Loading the
same file again updates the campaign in place: nodes are matched by key,
triggers by name, and choices and trigger events are replaced.
"""
import json
import os
import logging
from typing import Any, Dict, List

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chronicles.database.models import (
    Campaign,
    NodeChoice,
    NodeType,
    StoryNode,
    TriggerDefinition,
    TriggeredEvent,
)
from chronicles.errors import GraphLookupError, PersistenceFailure

logger = logging.getLogger(__name__)

# Claves de condición que referencian nodos por su clave local
NODE_KEY_FIELDS = {"node_key": "node_id"}


class CampaignLoader:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def load_from_directory(self, directory_path: str = "campaigns") -> List[Campaign]:
        """Carga todos los archivos JSON de un directorio."""
        if not os.path.isdir(directory_path):
            logger.warning(f"Directorio de campañas no encontrado: {directory_path}")
            return []

        campaigns = []
        for filename in sorted(os.listdir(directory_path)):
            if not filename.endswith(".json"):
                continue
            filepath = os.path.join(directory_path, filename)
            try:
                campaigns.append(await self.load_from_file(filepath))
            except (OSError, ValueError, GraphLookupError, PersistenceFailure) as e:
                logger.error(f"Error cargando {filepath}: {e}")

        logger.info(f"Cargadas {len(campaigns)} campañas desde {directory_path}")
        return campaigns

    async def load_from_file(self, filepath: str) -> Campaign:
        with open(filepath, "r", encoding="utf-8") as file:
            data = json.load(file)
        if not isinstance(data, dict):
            raise ValueError(f"Invalid campaign file {filepath}: expected an object")
        return await self.load_campaign(data)

    async def load_campaign(self, data: Dict[str, Any]) -> Campaign:
        title = data.get("title")
        if not title:
            raise ValueError("Campaign without title")

        try:
            campaign = await self._upsert_campaign(data)
            nodes = await self._upsert_nodes(campaign, data.get("nodes", []))
            await self._replace_choices(nodes, data.get("nodes", []))
            await self._upsert_triggers(campaign, nodes, data.get("triggers", []))

            start_key = data.get("start_node")
            if start_key is not None:
                if start_key not in nodes:
                    raise GraphLookupError("start node", start_key)
                campaign.start_node_id = nodes[start_key].id
            elif campaign.start_node_id is None and nodes:
                campaign.start_node_id = next(iter(nodes.values())).id

            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Error cargando campaña {title}: {e}")
            raise PersistenceFailure(f"Failed to load campaign {title}") from e
        except (GraphLookupError, ValueError):
            await self.session.rollback()
            raise

        await self.session.refresh(campaign)
        logger.info(f"Campaña cargada: {campaign.title} ({len(nodes)} nodos)")
        return campaign

    async def _upsert_campaign(self, data: Dict[str, Any]) -> Campaign:
        stmt = select(Campaign).where(Campaign.title == data["title"])
        campaign = (await self.session.execute(stmt)).scalars().first()
        if campaign:
            campaign.description = data.get("description", campaign.description)
            logger.info(f"Campaña actualizada: {campaign.title}")
        else:
            campaign = Campaign(title=data["title"], description=data.get("description"), play_count=0)
            self.session.add(campaign)
            logger.info(f"Campaña creada: {campaign.title}")
        await self.session.flush()
        return campaign

    async def _upsert_nodes(self, campaign: Campaign, nodes_data: List[Dict[str, Any]]) -> Dict[str, StoryNode]:
        stmt = select(StoryNode).where(StoryNode.campaign_id == campaign.id)
        existing = {n.key: n for n in (await self.session.execute(stmt)).scalars().all() if n.key}

        nodes: Dict[str, StoryNode] = {}
        for node_data in nodes_data:
            key = node_data.get("key")
            if not key:
                raise ValueError("Node without key")
            content = {"text": node_data.get("text", "")}
            for extra in ("npc_name", "npc_portrait", "image_url"):
                if node_data.get(extra):
                    content[extra] = node_data[extra]

            node = existing.get(key)
            if node is None:
                node = StoryNode(campaign_id=campaign.id, key=key)
                self.session.add(node)
            node.node_type = NodeType(node_data.get("node_type", "narrative"))
            node.title = node_data.get("title")
            node.content = content
            node.xp_reward = int(node_data.get("xp_reward", 0))
            nodes[key] = node

        await self.session.flush()
        return nodes

    async def _replace_choices(self, nodes: Dict[str, StoryNode], nodes_data: List[Dict[str, Any]]):
        node_ids = [n.id for n in nodes.values()]
        if node_ids:
            await self.session.execute(delete(NodeChoice).where(NodeChoice.node_id.in_(node_ids)))

        for node_data in nodes_data:
            node = nodes[node_data["key"]]
            for index, choice_data in enumerate(node_data.get("choices", [])):
                target_key = choice_data.get("target")
                if target_key is not None and target_key not in nodes:
                    raise GraphLookupError("node", target_key)
                self.session.add(NodeChoice(
                    node_id=node.id,
                    order_index=choice_data.get("order_index", index),
                    choice_text=choice_data.get("text", ""),
                    target_node_id=nodes[target_key].id if target_key is not None else None,
                    stat_requirement=choice_data.get("requirement"),
                    stat_effect=choice_data.get("effect"),
                ))
        await self.session.flush()

    def _resolve_conditions(self, conditions: Any, nodes: Dict[str, StoryNode]) -> Any:
        """Swap node keys for ids, including inside ``all_of`` groups."""
        if not isinstance(conditions, dict):
            return conditions
        resolved = {}
        for name, value in conditions.items():
            if name in NODE_KEY_FIELDS:
                if value not in nodes:
                    raise GraphLookupError("node", value)
                resolved[NODE_KEY_FIELDS[name]] = nodes[value].id
            elif name == "conditions" and isinstance(value, list):
                resolved[name] = [
                    {**part, "conditions": self._resolve_conditions(part.get("conditions", {}), nodes)}
                    if isinstance(part, dict) else part
                    for part in value
                ]
            else:
                resolved[name] = value
        return resolved

    async def _upsert_triggers(self, campaign: Campaign, nodes: Dict[str, StoryNode], triggers_data: List[Dict[str, Any]]):
        stmt = select(TriggerDefinition).where(TriggerDefinition.campaign_id == campaign.id)
        existing = {t.name: t for t in (await self.session.execute(stmt)).scalars().all()}

        for position, trigger_data in enumerate(triggers_data):
            name = trigger_data.get("name")
            if not name:
                raise ValueError("Trigger without name")
            trigger = existing.get(name)
            if trigger is None:
                trigger = TriggerDefinition(campaign_id=campaign.id, name=name)
                self.session.add(trigger)
            trigger.description = trigger_data.get("description")
            trigger.trigger_type = trigger_data.get("trigger_type", "")
            trigger.conditions = self._resolve_conditions(trigger_data.get("conditions", {}), nodes)
            trigger.is_active = trigger_data.get("is_active", True)
            trigger.position = trigger_data.get("position", position)
            await self.session.flush()

            await self.session.execute(delete(TriggeredEvent).where(TriggeredEvent.trigger_id == trigger.id))
            for event_position, event_data in enumerate(trigger_data.get("events", [])):
                self.session.add(TriggeredEvent(
                    trigger_id=trigger.id,
                    name=event_data.get("name") or event_data.get("event_type", ""),
                    event_type=event_data.get("event_type", ""),
                    payload=event_data.get("payload", {}),
                    position=event_position,
                ))
        await self.session.flush()
