# /chatflow/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from chatflow.utils.logging import setup_logging
from chatflow.utils.alerting import alerting_service
from chatflow.services.db_service import db_service
from chatflow.services.conversation_service import conversation_service
from chatflow.services.document_service import document_service
from chatflow.services.handover_service import handover_notifier
from chatflow.services.whatsapp_service import whatsapp_service

# Startup connects the session store first; a networked store that cannot be
# reached stops the process instead of silently losing conversations.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()

    logger.info("Application starting up...")

    await conversation_service.store.connect()
    await db_service.create_indexes()

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")

    await conversation_service.shutdown()
    await whatsapp_service.cleanup()
    await document_service.cleanup()
    await handover_notifier.cleanup()
    await alerting_service.cleanup()
    await conversation_service.store.close()
    if db_service.client:
        db_service.client.close()
