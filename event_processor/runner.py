"""Entry point for the processor service: settings, logging, services, uvicorn."""

from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from event_processor.api import create_app
from event_processor.logging_config import setup_logging
from event_processor.services import build_services
from event_processor.settings import get_setting, load_settings

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def main() -> None:
    """Synchronous entry: serve the HTTP endpoint until interrupted."""
    load_dotenv(_PROJECT_ROOT / ".env")
    settings = load_settings()
    setup_logging(_PROJECT_ROOT, settings)
    app = create_app(build_services(settings, _PROJECT_ROOT))
    uvicorn.run(
        app,
        host=get_setting(settings, "http.host", "127.0.0.1"),
        port=int(get_setting(settings, "http.port", 8080)),
        log_config=None,
    )


__all__ = ["main"]
