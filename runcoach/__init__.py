"""Flask application factory."""

import logging
import threading
from typing import Optional

from flask import Flask

from .config import Settings, load_settings
from .services.ai_service import AIService
from .services.events import EventChannel, ReflectionSaved
from .services.roadmap_service import RoadmapService
from .services.session_coordinator import SessionPersistenceCoordinator
from .services.storage_service import StorageService
from .services.workout_analysis import WorkoutAnalysisService


def create_app(
    settings: Optional[Settings] = None,
    storage_service: Optional[StorageService] = None,
    ai_service: Optional[AIService] = None,
) -> Flask:
    """Configure and return the Flask application.

    Every service is built here and attached to the app object; nothing is
    shared through module globals. Tests pass their own settings or service
    instances.
    """

    settings = settings or load_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

    app = Flask(__name__)
    app.config['DEBUG'] = settings.debug
    app.settings = settings

    # Services discover optional integrations (Gemini, Supabase, Redis) from
    # the settings and degrade to local behaviour when they are missing.
    app.storage_service = storage_service or StorageService(settings)
    app.ai_service = ai_service or AIService(settings)
    app.analysis_service = WorkoutAnalysisService(app.ai_service)
    app.roadmap_service = RoadmapService(app.storage_service, app.ai_service)

    app.reflection_events = EventChannel[ReflectionSaved]('reflection_saved')
    app.reflection_events.subscribe(app.roadmap_service.handle_reflection_saved)

    app.session_coordinator = SessionPersistenceCoordinator(
        app.storage_service,
        app.analysis_service,
        app.reflection_events,
    )

    # One workout state machine per user id.
    app.active_workouts = {}
    app.active_workouts_lock = threading.Lock()

    from .routes import main_bp

    app.register_blueprint(main_bp)

    return app
