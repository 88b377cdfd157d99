"""Sync trigger surface for Mneme.

Decides when sync runs. All triggers funnel into the same engine:

- on_local_mutation: every repository write; schedules a debounced push.
- on_foreground: the app became active; push then pull, failures logged.
- manual_refresh: explicit user request; pull only, failures raised.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import logging
from typing import Optional

from .config import Config
from .remote import SyncError
from .scheduler import PushScheduler
from .sync_engine import SyncEngine, SyncResult

logger = logging.getLogger(__name__)


class SyncNotConfiguredError(SyncError):
    """Sync was requested but is disabled or has no server URL."""


class SyncTriggers:
    """Lifecycle hooks that start sync work."""

    def __init__(
        self,
        config: Config,
        engine: Optional[SyncEngine] = None,
        scheduler: Optional[PushScheduler] = None,
    ) -> None:
        self.config = config
        self.engine = engine
        self.scheduler = scheduler

    def is_active(self) -> bool:
        """Check whether sync is enabled and wired to a Remote Store."""
        return self.engine is not None and self.config.is_sync_enabled()

    def on_local_mutation(self) -> None:
        """Schedule a debounced push after a local write."""
        if self.scheduler is not None and self.is_active():
            self.scheduler.schedule()

    def on_foreground(self) -> Optional[SyncResult]:
        """Push then pull when the app returns to the foreground.

        Failures of either stage are logged and swallowed: being offline is
        a normal condition. A cycle already in progress makes this a no-op.

        Returns:
            Combined result, or None if nothing ran
        """
        if not self.is_active():
            return None
        if self.engine.is_syncing():
            logger.debug("Foreground sync skipped, a sync is already running")
            return None

        result = SyncResult()
        try:
            pushed = self.engine.push()
            result.pushed = pushed.pushed
            result.merged = pushed.merged
            result.errors.extend(pushed.errors)
        except SyncError as e:
            logger.warning(f"Foreground push failed: {e}")
            result.add_error(f"push: {e}")

        try:
            pulled = self.engine.pull()
            result.pulled = pulled.pulled
            result.errors.extend(pulled.errors)
            result.purged = self.engine.purge_tombstones()
        except SyncError as e:
            logger.warning(f"Foreground pull failed: {e}")
            result.add_error(f"pull: {e}")

        result.success = not result.errors
        return result

    def manual_refresh(self) -> SyncResult:
        """Pull now at the user's request.

        Raises:
            SyncNotConfiguredError: If sync is disabled or has no server
            SyncError: If the pull fails
        """
        if not self.is_active():
            raise SyncNotConfiguredError("sync is not enabled or has no server URL")
        return self.engine.pull()
