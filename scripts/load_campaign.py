#!/usr/bin/env python3
"""
Carga o actualiza una campaña desde un archivo JSON.

Uso: python scripts/load_campaign.py campaigns/sunken_keep.json
"""
import asyncio
import os
import sys

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
ROOT_DIR = os.path.abspath(os.path.join(SCRIPT_DIR, os.pardir))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from chronicles.database.setup import init_db, get_session_factory, close_db
from chronicles.services.campaign_loader import CampaignLoader
from chronicles.utils.logging_setup import setup_logging


async def main(filepath: str) -> None:
    setup_logging(log_file=None)
    await init_db()
    async with get_session_factory()() as session:
        campaign = await CampaignLoader(session).load_from_file(filepath)
    await close_db()
    print(f"✅ Campaña '{campaign.title}' cargada (id {campaign.id}, nodo inicial {campaign.start_node_id})")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print(__doc__)
        sys.exit(1)
    asyncio.run(main(sys.argv[1]))
