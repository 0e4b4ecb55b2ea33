"""Mapping registry: exclusive project ownership of remote event-types."""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set

from .database import DatabaseManager
from .errors import ValidationError
from .models import MappingRecord

logger = logging.getLogger(__name__)

BackfillHook = Callable[[str], Awaitable[object]]


class MappingRegistry:
    """Tracks which project owns which remote event-type."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        on_first_activation: Optional[BackfillHook] = None
    ):
        """Initialize the registry.

        Args:
            db_manager: Store
            on_first_activation: Coroutine function scheduled with the
                project id when a project gains its first active mapping
        """
        self.db_manager = db_manager
        self.on_first_activation = on_first_activation
        self.logger = logger.getChild('registry')
        self._background: Set[asyncio.Task] = set()

    def _validate(self, project_id: str, remote_event_type_id: str) -> None:
        if not project_id or not project_id.strip():
            raise ValidationError("project_id must not be empty")
        if not remote_event_type_id or not remote_event_type_id.strip():
            raise ValidationError("remote_event_type_id must not be empty")

    def activate(
        self,
        project_id: str,
        remote_event_type_id: str,
        display_name: str = "",
        transfer_ownership: bool = False
    ) -> MappingRecord:
        """Activate a mapping for a project.

        Args:
            project_id: Project claiming the event-type
            remote_event_type_id: Remote event-type URI
            display_name: Event-type display name
            transfer_ownership: Move ownership away from another project
                instead of failing

        Returns:
            The active mapping

        Raises:
            ValidationError: If identifiers are blank
            ConflictError: If another project owns the event-type and
                transfer was not requested
        """
        self._validate(project_id, remote_event_type_id)

        with self.db_manager.get_session() as session:
            had_active = bool(self.db_manager.query_mappings(session, project_id))
            mapping = self.db_manager.upsert_mapping(
                session,
                project_id,
                remote_event_type_id,
                display_name=display_name,
                is_active=True,
                transfer_ownership=transfer_ownership,
                backfill_pending=not had_active,
            )
            record = MappingRecord.model_validate(mapping)

        self.logger.info(f"Activated {remote_event_type_id} for project {project_id}")
        if not had_active:
            self._schedule_backfill(project_id)
        return record

    def deactivate(self, project_id: str, remote_event_type_id: str) -> bool:
        """Deactivate a mapping. Deactivating an inactive or unknown mapping is a no-op."""
        self._validate(project_id, remote_event_type_id)
        with self.db_manager.get_session() as session:
            changed = self.db_manager.deactivate_mapping(session, project_id, remote_event_type_id)
        if changed:
            self.logger.info(f"Deactivated {remote_event_type_id} for project {project_id}")
        return changed

    def list_active(self, project_id: str) -> List[MappingRecord]:
        """Active mappings for a project, oldest first."""
        with self.db_manager.get_session() as session:
            return [
                MappingRecord.model_validate(m)
                for m in self.db_manager.query_mappings(session, project_id)
            ]

    def list_all(self, project_id: str) -> List[MappingRecord]:
        with self.db_manager.get_session() as session:
            return [
                MappingRecord.model_validate(m)
                for m in self.db_manager.query_mappings(session, project_id, active_only=False)
            ]

    def owner_of(self, remote_event_type_id: str) -> Optional[MappingRecord]:
        """The active mapping for an event-type, if any project owns it."""
        with self.db_manager.get_session() as session:
            mapping = self.db_manager.get_active_mapping(session, remote_event_type_id)
            return MappingRecord.model_validate(mapping) if mapping else None

    def _schedule_backfill(self, project_id: str) -> None:
        if self.on_first_activation is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.info(f"No running event loop; backfill for {project_id} left to the scheduler")
            return

        task = loop.create_task(self._run_backfill(project_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_backfill(self, project_id: str) -> None:
        self.logger.info(f"Starting historical backfill for project {project_id}")
        try:
            await self.on_first_activation(project_id)
        except Exception as e:
            # The mapping stays flagged, so the scheduler retries the backfill
            self.logger.error(f"Backfill for project {project_id} failed: {type(e).__name__}: {e}")

    async def wait_for_background(self) -> None:
        """Wait for scheduled backfills to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
