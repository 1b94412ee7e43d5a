"""Single-pass and fixed-interval driving of the sync engine."""

import logging
import time
from collections.abc import Callable

from ..errors import ConfigError, DavSyncError
from ..models.config import FileEntry
from .operations import SyncEngine, SyncResult

logger = logging.getLogger(__name__)


class Scheduler:
    """Runs the engine over one or all configured files."""

    def __init__(
        self,
        engine: SyncEngine,
        files: list[FileEntry],
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.engine = engine
        self.files = list(files)
        self._sleep = sleep

    def select(self, identifier: str | None = None) -> list[FileEntry]:
        """All files, or the one matching identifier.

        Raises:
            ConfigError: If identifier is not configured
        """
        if identifier is None:
            return list(self.files)
        for entry in self.files:
            if entry.identifier == identifier:
                return [entry]
        raise ConfigError(f"Unknown file identifier '{identifier}'")

    def run_once(self, identifier: str | None = None) -> list[SyncResult]:
        """One pass over the selected files."""
        return self.engine.sync_all(self.select(identifier))

    def run_forever(
        self,
        interval_minutes: float,
        identifier: str | None = None,
        on_pass: Callable[[list[SyncResult]], None] | None = None,
        max_passes: int | None = None,
    ) -> None:
        """Repeat run_once every interval_minutes until interrupted.

        A failed pass is logged and the loop carries on.

        Args:
            interval_minutes: Pause between the end of one pass and the next
            identifier: Restrict each pass to one file
            on_pass: Called with each pass's results
            max_passes: Stop after this many passes (None runs forever)
        """
        passes = 0
        while max_passes is None or passes < max_passes:
            passes += 1
            logger.info("Sync pass %d", passes)
            try:
                results = self.run_once(identifier)
            except DavSyncError as e:
                logger.error("Sync pass %d failed: %s", passes, e)
            else:
                failed = [r.identifier for r in results if not r.success]
                if failed:
                    logger.warning("Sync pass %d: failed for %s", passes, ", ".join(failed))
                if on_pass is not None:
                    on_pass(results)

            if max_passes is not None and passes >= max_passes:
                break
            logger.info("Next sync in %g min", interval_minutes)
            self._sleep(interval_minutes * 60)
