"""Live progress reporting for a generation, stored on the playlist row."""

import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .models import PipelineStep
from .store import Database

logger = logging.getLogger(__name__)


class ProgressTracker:
    """Writes the progress document for one generation.

    The document is ``{currentStep, generationId, startedAt, steps}`` where
    ``steps`` accumulates the payload of every step reported so far.
    Writes are best-effort: a failed write is logged and reported through
    the return value, and the pipeline carries on.
    """

    def __init__(self, db: Database, playlist_id: str, generation_id: str,
                 started_at: Optional[str] = None):
        self.db = db
        self.playlist_id = playlist_id
        self.generation_id = generation_id
        self.started_at = started_at or datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        self.steps: Dict[str, Any] = {}
        self.current_step: Optional[PipelineStep] = None

    def document(self) -> Dict[str, Any]:
        return {
            "currentStep": self.current_step.value if self.current_step else None,
            "generationId": self.generation_id,
            "startedAt": self.started_at,
            "steps": dict(self.steps),
        }

    def advance(self, step: PipelineStep, data: Optional[Dict[str, Any]] = None) -> bool:
        """Mark ``step`` current, merging ``data`` into its payload when given.

        Returns:
            True if the document was written
        """
        self.current_step = step
        if data is not None:
            self.steps[step.value] = data
        try:
            self.db.update_progress(self.playlist_id, self.document())
        except sqlite3.Error as e:
            logger.warning(f"Progress write failed for playlist {self.playlist_id} at {step.value}: {e}")
            return False
        return True
