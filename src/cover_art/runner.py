"""
Batch runs over users and playlists.

Scheduled runs process each user's cron-enabled playlists; manual triggers
process an explicit list. Playlists are always processed one at a time.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import DEFAULT_STYLE_ID
from .exceptions import PipelineError
from .models import GenerationResult, PipelineOptions, PlaylistRef, Style, TriggerType
from .pipeline import CoverArtPipeline
from .store import Database
from .tokens import TokenManager

logger = logging.getLogger(__name__)

STALE_PLAYLIST_MINUTES = 15
STALE_JOB_MINUTES = 30


@dataclass
class JobSummary:
    job_id: str
    user_id: str
    total: int = 0
    completed: int = 0
    failed: int = 0
    error: Optional[str] = None


class BatchRunner:
    """Runs the pipeline for users (scheduled) or playlist lists (manual)."""

    def __init__(self, db: Database, pipeline: CoverArtPipeline, tokens: TokenManager,
                 default_style_id: str = DEFAULT_STYLE_ID):
        self.db = db
        self.pipeline = pipeline
        self.tokens = tokens
        self.default_style_id = default_style_id

    def resolve_style(self, style_id: Optional[str]) -> Style:
        """Look up a style, falling back to the default style.

        Raises:
            PipelineError: If neither style exists
        """
        for candidate in (style_id, self.default_style_id):
            if candidate:
                style = self.db.get_style(candidate)
                if style is not None:
                    return style
                logger.warning(f"Style '{candidate}' not found")
        raise PipelineError(f"No usable style (requested '{style_id}', default '{self.default_style_id}')")

    @staticmethod
    def _ref(row: Dict[str, Any]) -> PlaylistRef:
        return PlaylistRef(
            id=row["id"],
            spotify_playlist_id=row["spotify_playlist_id"],
            name=row["name"],
            user_id=row["user_id"],
        )

    async def process_user(self, user: Dict[str, Any]) -> JobSummary:
        """Generate covers for every cron-enabled playlist of one user.

        Args:
            user: Row from the users table

        Returns:
            JobSummary; the job row carries the same totals
        """
        user_id = user["id"]
        job_id = self.db.create_job(user_id, "cron")
        summary = JobSummary(job_id=job_id, user_id=user_id)

        try:
            access_token = await self.tokens.get_access_token(user_id, user["encrypted_refresh_token"])
            style = self.resolve_style(user.get("style_preference"))
            playlists = self.db.list_cron_playlists(user_id)
            summary.total = len(playlists)
            logger.info(f"Processing {summary.total} playlists for user {user_id}")

            for row in playlists:
                playlist_style = self.resolve_style(row["style_override"]) if row.get("style_override") else style
                result = await self.pipeline.generate_for_playlist(
                    self._ref(row),
                    playlist_style,
                    access_token,
                    PipelineOptions(trigger_type=TriggerType.CRON, job_id=job_id),
                )
                if result.success:
                    summary.completed += 1
                else:
                    summary.failed += 1

            self.db.finish_job(job_id, status="completed", total=summary.total,
                               completed=summary.completed, failed=summary.failed)
        except Exception as e:
            summary.error = str(e)
            logger.error(f"Job {job_id} for user {user_id} failed: {e}")
            self.db.finish_job(job_id, status="failed", total=summary.total,
                               completed=summary.completed, failed=summary.failed,
                               error_message=summary.error[:500])
        return summary

    async def run_scheduled(self, hour: Optional[int] = None) -> List[JobSummary]:
        """Process every user due at ``hour`` (all cron users when None), one after another."""
        users = self.db.list_cron_users(hour)
        logger.info(f"Scheduled run: {len(users)} users" + (f" at hour {hour}" if hour is not None else ""))
        return [await self.process_user(user) for user in users]

    async def trigger(
        self,
        user_id: str,
        playlist_ids: Sequence[str],
        options: Optional[PipelineOptions] = None,
        style_id: Optional[str] = None,
    ) -> List[GenerationResult]:
        """Queue and then generate covers for specific playlists of one user.

        Playlists are marked ``queued`` together before the first one starts.

        Raises:
            PipelineError: If the user is unknown or no style is usable
            TokenRefreshError: If the user's token cannot be refreshed
        """
        options = options or PipelineOptions(trigger_type=TriggerType.MANUAL)
        user = self.db.get_user(user_id)
        if user is None:
            raise PipelineError(f"Unknown user {user_id}")

        refs = []
        for playlist_id in playlist_ids:
            ref = self.db.get_playlist_ref(playlist_id)
            if ref is None or ref.user_id != user_id:
                logger.warning(f"Skipping playlist {playlist_id}: not found for user {user_id}")
                continue
            refs.append(ref)

        access_token = await self.tokens.get_access_token(user_id, user["encrypted_refresh_token"])
        style = self.resolve_style(style_id or user.get("style_preference"))

        self.db.mark_playlists_queued([r.id for r in refs])
        results = []
        for ref in refs:
            results.append(await self.pipeline.generate_for_playlist(ref, style, access_token, options))
        return results

    def sweep(self, playlist_minutes: int = STALE_PLAYLIST_MINUTES,
              job_minutes: int = STALE_JOB_MINUTES) -> Tuple[int, int]:
        """Reset playlists and jobs abandoned by a crashed run.

        Returns:
            (playlists reset, jobs expired)
        """
        playlists = self.db.reclaim_stale_playlists(playlist_minutes)
        jobs = self.db.expire_stale_jobs(job_minutes)
        if playlists or jobs:
            logger.warning(f"Reclaimed {playlists} stale playlists, expired {jobs} stale jobs")
        return playlists, jobs
