"""
Data models for cover art generation.

Tracks and their lyrics, per-track extractions, convergence results,
claimed objects, styles and the options/results of a pipeline run.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from src.spotify.models import SpotifyTrack


class Tier(str, Enum):
    """Visual importance of an extracted object."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def score(self) -> int:
        return {Tier.HIGH: 3, Tier.MEDIUM: 2, Tier.LOW: 1}[self]


class PlaylistStatus(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    PROCESSING = "processing"
    GENERATED = "generated"
    FAILED = "failed"


class GenerationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TriggerType(str, Enum):
    """What started a generation."""

    MANUAL = "manual"
    CRON = "cron"
    AUTO = "auto"

    @property
    def usage_source(self) -> str:
        """Trigger source label used in the usage ledger."""
        return {
            TriggerType.MANUAL: "user",
            TriggerType.CRON: "cron",
            TriggerType.AUTO: "auto_detect",
        }[self]


class PipelineStep(str, Enum):
    """Progress steps in the order the pipeline reports them."""

    FETCH_TRACKS = "fetch_tracks"
    FETCH_LYRICS = "fetch_lyrics"
    EXTRACT_THEMES = "extract_themes"
    SELECT_THEME = "select_theme"
    GENERATE_IMAGE = "generate_image"
    UPLOAD = "upload"


@dataclass(frozen=True)
class Track:
    """A playlist track with the lyrics gathered for it.

    Immutable for the duration of a run; ``with_lyrics`` returns a copy.
    """

    spotify_track_id: str
    name: str
    artist: str
    album: str = ""
    duration_ms: int = 0
    lyrics: Optional[str] = None
    lyrics_found: bool = False
    album_image_url: Optional[str] = None
    added_at: Optional[str] = None
    added_by: Optional[str] = None
    explicit: bool = False
    release_date: Optional[str] = None
    is_local: bool = False

    @classmethod
    def from_spotify(cls, track: SpotifyTrack) -> "Track":
        return cls(
            spotify_track_id=track.spotify_track_id,
            name=track.name,
            artist=track.artist,
            album=track.album,
            duration_ms=track.duration_ms,
            album_image_url=track.album_image_url,
            added_at=track.added_at,
            added_by=track.added_by,
            explicit=track.explicit,
            release_date=track.release_date,
            is_local=track.is_local,
        )

    def with_lyrics(self, lyrics: Optional[str], found: bool) -> "Track":
        return replace(self, lyrics=lyrics, lyrics_found=found)

    @property
    def label(self) -> str:
        """``"{name} - {artist}"``, for display only; tracks are matched on the (name, artist) pair."""
        return f"{self.name} - {self.artist}"

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "spotifyTrackId": self.spotify_track_id,
            "name": self.name,
            "artist": self.artist,
            "album": self.album,
            "lyricsFound": self.lyrics_found,
        }


@dataclass
class TieredObject:
    """A concrete visual noun extracted from one track."""

    object: str
    tier: Tier
    reasoning: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["TieredObject"]:
        """Parse one object entry; entries without a name or with an unknown tier yield None."""
        name = str(data.get("object") or "").strip()
        try:
            tier = Tier(str(data.get("tier", "")).lower())
        except ValueError:
            return None
        if not name:
            return None
        return cls(object=name, tier=tier, reasoning=str(data.get("reasoning") or ""))

    def to_dict(self) -> Dict[str, Any]:
        return {"object": self.object, "tier": self.tier.value, "reasoning": self.reasoning}


@dataclass
class TrackExtraction:
    """Symbolic objects extracted from a single track (cached per track ID)."""

    track_name: str
    artist: str
    lyrics_found: bool
    objects: List[TieredObject] = field(default_factory=list)

    @classmethod
    def empty(cls, track: Track) -> "TrackExtraction":
        return cls(track_name=track.name, artist=track.artist, lyrics_found=track.lyrics_found)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], track: Optional[Track] = None) -> "TrackExtraction":
        """Parse the LLM/cache JSON shape, falling back to track fields for missing names."""
        objects = [
            parsed for parsed in (
                TieredObject.from_dict(o) for o in data.get("objects") or [] if isinstance(o, dict)
            )
            if parsed is not None
        ]
        return cls(
            track_name=data.get("trackName") or (track.name if track else ""),
            artist=data.get("artist") or (track.artist if track else ""),
            lyrics_found=bool(data.get("lyricsFound", track.lyrics_found if track else False)),
            objects=objects,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trackName": self.track_name,
            "artist": self.artist,
            "lyricsFound": self.lyrics_found,
            "objects": [o.to_dict() for o in self.objects],
        }


@dataclass
class ExtractionBatch:
    """Result of extracting every track of a playlist."""

    extractions: List[TrackExtraction]
    input_tokens: int = 0
    output_tokens: int = 0
    cache_hits: int = 0


@dataclass
class ObjectScore:
    """Aggregate tier score of one object across a playlist."""

    object: str
    score: int
    track_count: int


@dataclass
class RankedCandidate:
    object: str
    aesthetic_context: str
    reasoning: str
    rank: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any], position: int) -> "RankedCandidate":
        return cls(
            object=str(data.get("object") or ""),
            aesthetic_context=str(data.get("aestheticContext") or ""),
            reasoning=str(data.get("reasoning") or ""),
            rank=int(data.get("rank") or position + 1),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object": self.object,
            "aestheticContext": self.aesthetic_context,
            "reasoning": self.reasoning,
            "rank": self.rank,
        }


@dataclass
class ConvergenceResult:
    """Ranked candidates plus the index of the chosen one.

    Only build the pipeline's subject from a result that passed
    ``convergence.validate_convergence``.
    """

    candidates: List[RankedCandidate]
    selected_index: int
    collision_notes: str = ""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def selected(self) -> RankedCandidate:
        return self.candidates[self.selected_index]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidates": [c.to_dict() for c in self.candidates],
            "selectedIndex": self.selected_index,
            "collisionNotes": self.collision_notes,
        }


@dataclass
class LightExtraction:
    """Theme derived from a user's free-text description instead of lyrics."""

    object: str
    aesthetic_context: str
    reasoning: str
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ClaimedObject:
    """An object reserved by one playlist so the owner's other covers avoid it."""

    id: str
    user_id: str
    playlist_id: str
    object_name: str
    aesthetic_context: str = ""
    source_generation_id: Optional[str] = None
    superseded_at: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class ChangeDetectionResult:
    tracks_added: List[str]
    tracks_removed: List[str]
    outlier_count: int
    outlier_threshold: float
    should_regenerate: bool


@dataclass
class Style:
    """An art style: Replicate model, prompt template and sampler settings."""

    id: str
    name: str
    replicate_model: str
    prompt_template: str
    negative_prompt: Optional[str] = None
    lora_url: Optional[str] = None
    lora_scale: Optional[float] = None
    guidance_scale: Optional[float] = None
    num_inference_steps: Optional[int] = None
    seed: Optional[int] = None

    def render_prompt(self, subject: str) -> str:
        return self.prompt_template.replace("{subject}", subject)


@dataclass
class PlaylistRef:
    """The playlist a generation is for."""

    id: str
    spotify_playlist_id: str
    name: str
    user_id: str


@dataclass
class GeneratedImage:
    url: str
    prediction_id: str
    prompt: str
    model: str


@dataclass
class PipelineOptions:
    """Per-run options.

    Subject selection precedence: ``custom_object``, then
    ``light_extraction_text``, then full lyric analysis.
    """

    trigger_type: TriggerType = TriggerType.CRON
    job_id: Optional[str] = None
    revision_notes: Optional[str] = None
    custom_object: Optional[str] = None
    light_extraction_text: Optional[str] = None


@dataclass
class GenerationResult:
    success: bool
    generation_id: str
    error: Optional[str] = None
