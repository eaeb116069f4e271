#!/usr/bin/env python3
"""
Script para crear las tablas y cargar las campañas del directorio ``campaigns``.
"""
import asyncio
import os
import sys

# Añadimos la raíz del proyecto al sys.path para permitir las importaciones
SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
ROOT_DIR = os.path.abspath(os.path.join(SCRIPT_DIR, os.pardir))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from chronicles.database.setup import init_db, get_session_factory, close_db
from chronicles.services.campaign_loader import CampaignLoader
from chronicles.utils.logging_setup import setup_logging


async def main() -> None:
    setup_logging(log_file=None)
    print("🔧 Inicializando base de datos...")
    await init_db()

    print("📚 Cargando campañas...")
    directory = sys.argv[1] if len(sys.argv) > 1 else os.path.join(ROOT_DIR, "campaigns")
    async with get_session_factory()() as session:
        campaigns = await CampaignLoader(session).load_from_directory(directory)

    await close_db()
    print(f"✅ Base de datos lista ({len(campaigns)} campañas)")


if __name__ == "__main__":
    asyncio.run(main())
