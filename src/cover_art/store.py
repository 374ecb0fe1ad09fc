"""
SQLite store for users, playlists, generations and pipeline caches.

Every statement is parameterized. The schema is created with
``CREATE TABLE IF NOT EXISTS`` so a fresh database file works out of the box.
JSON columns (progress documents, snapshots, cost breakdowns) are stored as text.
"""

import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .models import ClaimedObject, GenerationStatus, PlaylistRef, PlaylistStatus, Style

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    spotify_user_id TEXT NOT NULL UNIQUE,
    display_name TEXT,
    encrypted_refresh_token TEXT,
    style_preference TEXT,
    cron_enabled INTEGER NOT NULL DEFAULT 1,
    cron_time TEXT NOT NULL DEFAULT '09:00',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS playlists (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    spotify_playlist_id TEXT NOT NULL,
    name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'idle',
    progress_data TEXT,
    cron_enabled INTEGER NOT NULL DEFAULT 1,
    style_override TEXT,
    last_generated_at TEXT,
    generation_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, spotify_playlist_id)
);

CREATE TABLE IF NOT EXISTS styles (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    replicate_model TEXT NOT NULL,
    lora_url TEXT,
    lora_scale REAL,
    prompt_template TEXT NOT NULL,
    negative_prompt TEXT,
    guidance_scale REAL,
    num_inference_steps INTEGER,
    seed INTEGER,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS generations (
    id TEXT PRIMARY KEY,
    playlist_id TEXT NOT NULL REFERENCES playlists(id),
    user_id TEXT NOT NULL REFERENCES users(id),
    style_id TEXT,
    symbolic_object TEXT,
    prompt TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    error_message TEXT,
    duration_ms INTEGER,
    cost_usd REAL,
    trigger_type TEXT NOT NULL DEFAULT 'cron',
    replicate_prediction_id TEXT,
    r2_key TEXT,
    analysis_id TEXT,
    claimed_object_id TEXT,
    model_name TEXT,
    llm_input_tokens INTEGER,
    llm_output_tokens INTEGER,
    image_model TEXT,
    cost_breakdown TEXT,
    cover_phash TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'running',
    total_playlists INTEGER NOT NULL DEFAULT 0,
    completed_playlists INTEGER NOT NULL DEFAULT 0,
    failed_playlists INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS playlist_analyses (
    id TEXT PRIMARY KEY,
    playlist_id TEXT NOT NULL REFERENCES playlists(id),
    user_id TEXT NOT NULL,
    generation_id TEXT,
    track_snapshot TEXT NOT NULL,
    track_extractions TEXT,
    convergence_result TEXT,
    chosen_object TEXT,
    aesthetic_context TEXT,
    style_id TEXT,
    tracks_added TEXT,
    tracks_removed TEXT,
    outlier_count INTEGER NOT NULL DEFAULT 0,
    outlier_threshold REAL NOT NULL DEFAULT 0.25,
    regeneration_triggered INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS claimed_objects (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    playlist_id TEXT NOT NULL,
    object_name TEXT NOT NULL,
    aesthetic_context TEXT,
    source_generation_id TEXT,
    superseded_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS track_lyrics (
    spotify_track_id TEXT PRIMARY KEY,
    track_name TEXT NOT NULL,
    artist_name TEXT NOT NULL,
    lyrics_snippet TEXT,
    fetched_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS song_extractions (
    spotify_track_id TEXT NOT NULL,
    track_name TEXT NOT NULL,
    artist_name TEXT NOT NULL,
    extraction_json TEXT NOT NULL,
    model_name TEXT NOT NULL,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    PRIMARY KEY (spotify_track_id, model_name)
);

CREATE TABLE IF NOT EXISTS usage_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    action_type TEXT NOT NULL,
    model TEXT,
    cost_usd REAL NOT NULL DEFAULT 0,
    generation_id TEXT,
    playlist_id TEXT,
    style_id TEXT,
    job_id TEXT,
    tokens_in INTEGER,
    tokens_out INTEGER,
    duration_ms INTEGER,
    model_unit_cost REAL,
    trigger_source TEXT,
    status TEXT NOT NULL,
    error_message TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_claims_user_active
    ON claimed_objects(user_id, superseded_at);
CREATE INDEX IF NOT EXISTS idx_analyses_playlist
    ON playlist_analyses(playlist_id, created_at);
CREATE INDEX IF NOT EXISTS idx_generations_playlist
    ON generations(playlist_id, created_at);
"""


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def _dumps(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


class Database:
    """
    Thin repository over a single SQLite connection.

    Example:
        >>> db = Database(":memory:")
        >>> db.init_schema()
        >>> user_id = db.add_user("spotify-user-1", encrypted_refresh_token="...")
    """

    def __init__(self, path: str = ":memory:"):
        """
        Open (and create if needed) the database.

        Args:
            path: SQLite file path, or ":memory:"
        """
        self.path = path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()

    def init_schema(self) -> None:
        with self._lock:
            self.conn.executescript(SCHEMA)
            self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            cursor = self.conn.execute(sql, params)
            self.conn.commit()
            return cursor

    def _executemany(self, sql: str, rows: Iterable[Sequence[Any]]) -> int:
        with self._lock:
            cursor = self.conn.executemany(sql, rows)
            self.conn.commit()
            return cursor.rowcount

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(sql, params).fetchone()
        return dict(row) if row else None

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [dict(row) for row in rows]

    # Users

    def add_user(
        self,
        spotify_user_id: str,
        encrypted_refresh_token: Optional[str] = None,
        display_name: Optional[str] = None,
        style_preference: Optional[str] = None,
        cron_time: str = "09:00",
        cron_enabled: bool = True,
    ) -> str:
        user_id = new_id()
        now = utc_now()
        self._execute(
            """
            INSERT INTO users (id, spotify_user_id, display_name, encrypted_refresh_token,
                               style_preference, cron_enabled, cron_time, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (user_id, spotify_user_id, display_name, encrypted_refresh_token,
             style_preference, int(cron_enabled), cron_time, now, now),
        )
        return user_id

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))

    def update_refresh_token(self, user_id: str, encrypted_refresh_token: str) -> None:
        self._execute(
            "UPDATE users SET encrypted_refresh_token = ?, updated_at = ? WHERE id = ?",
            (encrypted_refresh_token, utc_now(), user_id),
        )

    def list_cron_users(self, hour: Optional[int] = None) -> List[Dict[str, Any]]:
        """Users with scheduled generation enabled, optionally only those due at ``hour``."""
        users = self._fetchall(
            "SELECT * FROM users WHERE cron_enabled = 1 AND encrypted_refresh_token IS NOT NULL"
        )
        if hour is None:
            return users
        return [u for u in users if int((u["cron_time"] or "0").split(":")[0]) == hour]

    # Playlists

    def add_playlist(self, user_id: str, spotify_playlist_id: str, name: str,
                     cron_enabled: bool = True, style_override: Optional[str] = None) -> str:
        """Insert a playlist, or refresh the name of an existing one; returns its ID."""
        existing = self._fetchone(
            "SELECT id FROM playlists WHERE user_id = ? AND spotify_playlist_id = ?",
            (user_id, spotify_playlist_id),
        )
        now = utc_now()
        if existing:
            self._execute(
                "UPDATE playlists SET name = ?, updated_at = ? WHERE id = ?",
                (name, now, existing["id"]),
            )
            return existing["id"]

        playlist_id = new_id()
        self._execute(
            """
            INSERT INTO playlists (id, user_id, spotify_playlist_id, name, cron_enabled,
                                   style_override, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (playlist_id, user_id, spotify_playlist_id, name, int(cron_enabled),
             style_override, now, now),
        )
        return playlist_id

    def get_playlist(self, playlist_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM playlists WHERE id = ?", (playlist_id,))

    def get_playlist_ref(self, playlist_id: str) -> Optional[PlaylistRef]:
        row = self.get_playlist(playlist_id)
        if row is None:
            return None
        return PlaylistRef(
            id=row["id"],
            spotify_playlist_id=row["spotify_playlist_id"],
            name=row["name"],
            user_id=row["user_id"],
        )

    def list_cron_playlists(self, user_id: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM playlists WHERE user_id = ? AND cron_enabled = 1 ORDER BY created_at",
            (user_id,),
        )

    def update_progress(self, playlist_id: str, document: Dict[str, Any]) -> None:
        self._execute(
            "UPDATE playlists SET status = ?, progress_data = ?, updated_at = ? WHERE id = ?",
            (PlaylistStatus.PROCESSING.value, json.dumps(document), utc_now(), playlist_id),
        )

    def mark_playlists_queued(self, playlist_ids: Sequence[str]) -> None:
        now = utc_now()
        self._executemany(
            "UPDATE playlists SET status = ?, progress_data = ?, updated_at = ? WHERE id = ?",
            [
                (PlaylistStatus.QUEUED.value, json.dumps({"queuedAt": now}), now, pid)
                for pid in playlist_ids
            ],
        )

    def mark_playlist_generated(self, playlist_id: str) -> None:
        now = utc_now()
        self._execute(
            """
            UPDATE playlists
            SET status = ?, last_generated_at = ?, generation_count = generation_count + 1,
                progress_data = NULL, updated_at = ?
            WHERE id = ?
            """,
            (PlaylistStatus.GENERATED.value, now, now, playlist_id),
        )

    def mark_playlist_failed(self, playlist_id: str) -> None:
        self._execute(
            "UPDATE playlists SET status = ?, progress_data = NULL, updated_at = ? WHERE id = ?",
            (PlaylistStatus.FAILED.value, utc_now(), playlist_id),
        )

    def reclaim_stale_playlists(self, max_age_minutes: int = 15) -> int:
        """Reset playlists stuck in queued/processing back to idle.

        Returns:
            Number of playlists reset
        """
        cutoff = (datetime.now(timezone.utc) - timedelta(minutes=max_age_minutes)).isoformat()
        cursor = self._execute(
            """
            UPDATE playlists SET status = ?, progress_data = NULL, updated_at = ?
            WHERE status IN (?, ?) AND updated_at < ?
            """,
            (PlaylistStatus.IDLE.value, utc_now(), PlaylistStatus.QUEUED.value,
             PlaylistStatus.PROCESSING.value, cutoff),
        )
        return cursor.rowcount

    # Styles

    def add_style(self, style: Style) -> None:
        self._execute(
            """
            INSERT OR REPLACE INTO styles (id, name, replicate_model, lora_url, lora_scale,
                                           prompt_template, negative_prompt, guidance_scale,
                                           num_inference_steps, seed, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (style.id, style.name, style.replicate_model, style.lora_url, style.lora_scale,
             style.prompt_template, style.negative_prompt, style.guidance_scale,
             style.num_inference_steps, style.seed, utc_now()),
        )

    def get_style(self, style_id: str) -> Optional[Style]:
        row = self._fetchone("SELECT * FROM styles WHERE id = ?", (style_id,))
        if row is None:
            return None
        row.pop("created_at", None)
        return Style(**row)

    # Generations

    def create_generation(self, generation_id: str, playlist: PlaylistRef, style_id: str,
                          trigger_type: str, model_name: str, image_model: str) -> None:
        self._execute(
            """
            INSERT INTO generations (id, playlist_id, user_id, style_id, status, trigger_type,
                                     model_name, image_model, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (generation_id, playlist.id, playlist.user_id, style_id,
             GenerationStatus.PROCESSING.value, trigger_type, model_name, image_model, utc_now()),
        )

    def complete_generation(
        self,
        generation_id: str,
        *,
        symbolic_object: str,
        prompt: str,
        duration_ms: int,
        cost_usd: float,
        cost_breakdown: Dict[str, Any],
        replicate_prediction_id: str,
        r2_key: str,
        analysis_id: str,
        claimed_object_id: str,
        llm_input_tokens: int,
        llm_output_tokens: int,
        cover_phash: Optional[str],
    ) -> None:
        self._execute(
            """
            UPDATE generations
            SET status = ?, symbolic_object = ?, prompt = ?, duration_ms = ?, cost_usd = ?,
                cost_breakdown = ?, replicate_prediction_id = ?, r2_key = ?, analysis_id = ?,
                claimed_object_id = ?, llm_input_tokens = ?, llm_output_tokens = ?, cover_phash = ?
            WHERE id = ?
            """,
            (GenerationStatus.COMPLETED.value, symbolic_object, prompt, duration_ms, cost_usd,
             _dumps(cost_breakdown), replicate_prediction_id, r2_key, analysis_id,
             claimed_object_id, llm_input_tokens, llm_output_tokens, cover_phash, generation_id),
        )

    def fail_generation(
        self,
        generation_id: str,
        *,
        error_message: str,
        duration_ms: int,
        cost_usd: Optional[float],
        cost_breakdown: Optional[Dict[str, Any]],
        llm_input_tokens: int,
        llm_output_tokens: int,
    ) -> None:
        self._execute(
            """
            UPDATE generations
            SET status = ?, error_message = ?, duration_ms = ?, cost_usd = ?, cost_breakdown = ?,
                llm_input_tokens = ?, llm_output_tokens = ?
            WHERE id = ?
            """,
            (GenerationStatus.FAILED.value, error_message, duration_ms, cost_usd,
             _dumps(cost_breakdown), llm_input_tokens, llm_output_tokens, generation_id),
        )

    def get_generation(self, generation_id: str) -> Optional[Dict[str, Any]]:
        row = self._fetchone("SELECT * FROM generations WHERE id = ?", (generation_id,))
        if row and row.get("cost_breakdown"):
            row["cost_breakdown"] = json.loads(row["cost_breakdown"])
        return row

    def list_generations(self, playlist_id: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM generations WHERE playlist_id = ? ORDER BY created_at",
            (playlist_id,),
        )

    # Analyses

    def latest_track_snapshot(self, playlist_id: str) -> Optional[List[Dict[str, Any]]]:
        row = self._fetchone(
            """
            SELECT track_snapshot FROM playlist_analyses
            WHERE playlist_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1
            """,
            (playlist_id,),
        )
        return json.loads(row["track_snapshot"]) if row else None

    def insert_analysis(
        self,
        *,
        playlist_id: str,
        user_id: str,
        generation_id: str,
        track_snapshot: List[Dict[str, Any]],
        track_extractions: Optional[List[Dict[str, Any]]],
        convergence_result: Optional[Dict[str, Any]],
        chosen_object: str,
        aesthetic_context: str,
        style_id: str,
        tracks_added: List[str],
        tracks_removed: List[str],
        outlier_count: int,
        outlier_threshold: float,
        regeneration_triggered: bool,
        status: str,
    ) -> str:
        analysis_id = new_id()
        self._execute(
            """
            INSERT INTO playlist_analyses (id, playlist_id, user_id, generation_id, track_snapshot,
                                           track_extractions, convergence_result, chosen_object,
                                           aesthetic_context, style_id, tracks_added, tracks_removed,
                                           outlier_count, outlier_threshold, regeneration_triggered,
                                           status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (analysis_id, playlist_id, user_id, generation_id, json.dumps(track_snapshot),
             _dumps(track_extractions), _dumps(convergence_result), chosen_object,
             aesthetic_context, style_id, json.dumps(tracks_added), json.dumps(tracks_removed),
             outlier_count, outlier_threshold, int(regeneration_triggered), status, utc_now()),
        )
        return analysis_id

    def list_analyses(self, playlist_id: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM playlist_analyses WHERE playlist_id = ? ORDER BY created_at",
            (playlist_id,),
        )

    # Claimed objects

    def active_claims_excluding(self, user_id: str, playlist_id: str) -> List[ClaimedObject]:
        """Active claims on the user's *other* playlists."""
        rows = self._fetchall(
            """
            SELECT * FROM claimed_objects
            WHERE user_id = ? AND playlist_id != ? AND superseded_at IS NULL
            ORDER BY created_at
            """,
            (user_id, playlist_id),
        )
        return [ClaimedObject(**row) for row in rows]

    def active_claims(self, playlist_id: str) -> List[ClaimedObject]:
        rows = self._fetchall(
            "SELECT * FROM claimed_objects WHERE playlist_id = ? AND superseded_at IS NULL",
            (playlist_id,),
        )
        return [ClaimedObject(**row) for row in rows]

    def supersede_claims(self, playlist_id: str) -> int:
        cursor = self._execute(
            """
            UPDATE claimed_objects SET superseded_at = ?
            WHERE playlist_id = ? AND superseded_at IS NULL
            """,
            (utc_now(), playlist_id),
        )
        return cursor.rowcount

    def insert_claim(self, *, user_id: str, playlist_id: str, object_name: str,
                     aesthetic_context: str, source_generation_id: str) -> str:
        claim_id = new_id()
        self._execute(
            """
            INSERT INTO claimed_objects (id, user_id, playlist_id, object_name, aesthetic_context,
                                         source_generation_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (claim_id, user_id, playlist_id, object_name, aesthetic_context,
             source_generation_id, utc_now()),
        )
        return claim_id

    # Caches

    def get_cached_lyrics(self, track_ids: Sequence[str]) -> Dict[str, str]:
        if not track_ids:
            return {}
        placeholders = ",".join("?" for _ in track_ids)
        rows = self._fetchall(
            f"SELECT spotify_track_id, lyrics_snippet FROM track_lyrics "
            f"WHERE spotify_track_id IN ({placeholders}) AND lyrics_snippet IS NOT NULL",
            list(track_ids),
        )
        return {row["spotify_track_id"]: row["lyrics_snippet"] for row in rows}

    def cache_lyrics(self, rows: Iterable[Sequence[Any]]) -> int:
        """Insert (track_id, track_name, artist_name, lyrics) rows; existing rows win."""
        now = utc_now()
        return self._executemany(
            """
            INSERT OR IGNORE INTO track_lyrics
                (spotify_track_id, track_name, artist_name, lyrics_snippet, fetched_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            [(*row, now) for row in rows],
        )

    def get_cached_extractions(self, track_ids: Sequence[str], model_name: str) -> Dict[str, Dict[str, Any]]:
        """Cached extractions made by ``model_name``, keyed by track ID."""
        if not track_ids:
            return {}
        placeholders = ",".join("?" for _ in track_ids)
        rows = self._fetchall(
            f"SELECT spotify_track_id, extraction_json, input_tokens, output_tokens "
            f"FROM song_extractions WHERE model_name = ? AND spotify_track_id IN ({placeholders})",
            [model_name, *track_ids],
        )
        return {row["spotify_track_id"]: row for row in rows}

    def cache_extractions(self, rows: Iterable[Sequence[Any]]) -> int:
        """Insert (track_id, track_name, artist_name, json, model, tokens_in, tokens_out) rows."""
        now = utc_now()
        return self._executemany(
            """
            INSERT OR IGNORE INTO song_extractions
                (spotify_track_id, track_name, artist_name, extraction_json, model_name,
                 input_tokens, output_tokens, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [(*row, now) for row in rows],
        )

    # Usage

    def insert_usage_event(self, event: Dict[str, Any]) -> None:
        columns = list(event.keys()) + ["created_at"]
        values = list(event.values()) + [utc_now()]
        self._execute(
            f"INSERT INTO usage_events ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})",
            values,
        )

    def list_usage_events(self, generation_id: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM usage_events WHERE generation_id = ? ORDER BY id",
            (generation_id,),
        )

    # Jobs

    def create_job(self, user_id: Optional[str], job_type: str, total_playlists: int = 0) -> str:
        job_id = new_id()
        self._execute(
            "INSERT INTO jobs (id, user_id, type, total_playlists, started_at) VALUES (?, ?, ?, ?, ?)",
            (job_id, user_id, job_type, total_playlists, utc_now()),
        )
        return job_id

    def finish_job(self, job_id: str, *, status: str, total: int, completed: int, failed: int,
                   error_message: Optional[str] = None) -> None:
        self._execute(
            """
            UPDATE jobs
            SET status = ?, total_playlists = ?, completed_playlists = ?, failed_playlists = ?,
                error_message = ?, completed_at = ?
            WHERE id = ?
            """,
            (status, total, completed, failed, error_message, utc_now(), job_id),
        )

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM jobs WHERE id = ?", (job_id,))

    def expire_stale_jobs(self, max_age_minutes: int = 30) -> int:
        """Mark jobs still running after ``max_age_minutes`` as failed."""
        cutoff = (datetime.now(timezone.utc) - timedelta(minutes=max_age_minutes)).isoformat()
        cursor = self._execute(
            """
            UPDATE jobs SET status = 'failed', error_message = 'Job abandoned', completed_at = ?
            WHERE status = 'running' AND started_at < ?
            """,
            (utc_now(), cutoff),
        )
        return cursor.rowcount
