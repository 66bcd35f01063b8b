"""Wiring: build the store, CRM repository, bus client, registry and processor from settings."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from event_processor.consumers import ConsumerRegistry, build_registry
from event_processor.crm import CrmDb, CrmRepository
from event_processor.events import EventBusClient, EventStore
from event_processor.processor import EventProcessor
from event_processor.run_log import JsonRunLogger, RunLogger
from event_processor.settings import get_setting

logger = logging.getLogger(__name__)


@dataclass
class ProcessorServices:
    """Everything one process needs to serve runs. Passed explicitly, never a module global."""

    settings: dict[str, Any]
    store: EventStore
    crm: CrmRepository
    bus: EventBusClient
    registry: ConsumerRegistry
    run_log: RunLogger
    processor: EventProcessor

    async def close(self) -> None:
        await self.store.close()
        await self.crm.close()
        logger.info("services: database connections closed")


def build_services(
    settings: dict[str, Any],
    project_root: Path,
    run_log: RunLogger | None = None,
) -> ProcessorServices:
    """Construct services. Connections open lazily on first use."""
    db_path = Path(get_setting(settings, "database.path", "data/event_processor.db"))
    if not db_path.is_absolute():
        db_path = project_root / db_path
    busy_timeout = int(get_setting(settings, "database.busy_timeout", 5000))

    store = EventStore(
        db_path,
        busy_timeout=busy_timeout,
        max_attempts=int(get_setting(settings, "event_store.max_attempts", 5)),
        stale_timeout=float(get_setting(settings, "event_store.stale_timeout", 300.0)),
        backoff_base=float(get_setting(settings, "event_store.backoff_base", 5.0)),
        max_backoff=float(get_setting(settings, "event_store.max_backoff", 300.0)),
    )
    crm = CrmRepository(CrmDb(db_path, busy_timeout=busy_timeout))
    bus = EventBusClient(store, tenant_config=crm)
    registry = build_registry(bus, crm)
    run_log = run_log or JsonRunLogger()
    processor = EventProcessor(
        bus,
        registry,
        run_log,
        max_limit=int(get_setting(settings, "processor.max_limit", 100)),
        max_ms_ceiling=int(get_setting(settings, "processor.max_ms_ceiling", 55000)),
    )
    return ProcessorServices(
        settings=settings,
        store=store,
        crm=crm,
        bus=bus,
        registry=registry,
        run_log=run_log,
        processor=processor,
    )
