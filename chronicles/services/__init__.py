from .story_graph import StoryGraph
from .progress_tracker import CharacterProgressTracker
from .trigger_engine import TriggerEngine, TriggerService
from .session_controller import SessionController, next_turn_user
from .sync_channel import SyncChannel, get_sync_channel
from .campaign_loader import CampaignLoader

__all__ = [
    "StoryGraph",
    "CharacterProgressTracker",
    "TriggerEngine",
    "TriggerService",
    "SessionController",
    "next_turn_user",
    "SyncChannel",
    "get_sync_channel",
    "CampaignLoader",
]
