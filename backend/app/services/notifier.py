"""UI notification hooks fired after farm-out state changes."""
from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from app.core.logging import logger


class UINotifier(Protocol):
    """Dashboard hooks. Implementations may raise; callers log and move on."""

    def log_activity(
        self,
        tenant_id: str,
        reservation_id: str,
        message: str,
        actor: str = "system",
        details: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    def refresh_farmout_panel(self, tenant_id: str, reservation_id: str) -> None: ...

    def refresh_driver_directory(self, tenant_id: str) -> None: ...

    def refresh_map_markers(self, tenant_id: str) -> None: ...


class ActivityNotifier:
    """Writes activity lines to the store and logs panel refresh requests.

    Dashboards poll the board and activity routes, so a refresh is only a
    structured log event here.
    """

    def __init__(self, store: Any) -> None:
        self._store = store

    def log_activity(
        self,
        tenant_id: str,
        reservation_id: str,
        message: str,
        actor: str = "system",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._store.record_activity(tenant_id, reservation_id, message, actor=actor, details=details)
        logger.info("Farm-out activity", tenant_id=tenant_id, reservation_id=reservation_id, message=message, actor=actor)

    def refresh_farmout_panel(self, tenant_id: str, reservation_id: str) -> None:
        logger.debug("Farm-out panel refresh", tenant_id=tenant_id, reservation_id=reservation_id)

    def refresh_driver_directory(self, tenant_id: str) -> None:
        logger.debug("Driver directory refresh", tenant_id=tenant_id)

    def refresh_map_markers(self, tenant_id: str) -> None:
        logger.debug("Map marker refresh", tenant_id=tenant_id)
