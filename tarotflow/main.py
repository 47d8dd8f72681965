"""Composition root: settings, logging and the two reading front doors."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from tarotflow.ai import create_reading_service
from tarotflow.config import Settings
from tarotflow.flow import ReadingFlow
from tarotflow.utils.logging import configure_logging
from tarotflow.voice.session import RealtimeTransport, VoiceSessionOrchestrator

logger = logging.getLogger(__name__)


def load_settings(settings: Optional[Settings] = None) -> Settings:
    """Read settings from the environment (and ``.env``) unless given, then set up logging."""
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    return settings


def create_reading_flow(
    settings: Optional[Settings] = None,
    notify: Optional[Callable[[str], None]] = None,
) -> ReadingFlow:
    settings = load_settings(settings)
    flow = ReadingFlow(create_reading_service(settings), notify=notify)
    logger.info("Text reading flow created", extra={"ai_enabled": settings.ai_enabled})
    return flow


def create_voice_session(
    transport: RealtimeTransport,
    settings: Optional[Settings] = None,
) -> VoiceSessionOrchestrator:
    settings = load_settings(settings)
    session = VoiceSessionOrchestrator(transport, settings=settings)
    logger.info("Voice session created", extra={"draw_timeout": settings.draw_timeout})
    return session
