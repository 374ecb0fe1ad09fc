"""AI Cover Art for Spotify Playlists

This module analyses a playlist's lyrics, picks one symbolic object that is
distinct from the owner's other covers, renders it in an art style and
uploads the result as the playlist cover.
"""

from src.cover_art.exceptions import PipelineError
from src.cover_art.models import GenerationResult, PipelineOptions, TriggerType
from src.cover_art.pipeline import CoverArtPipeline
from src.cover_art.runner import BatchRunner

__version__ = "0.1.0"

__all__ = [
    "CoverArtPipeline",
    "BatchRunner",
    "PipelineOptions",
    "GenerationResult",
    "TriggerType",
    "PipelineError",
]
