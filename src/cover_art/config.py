"""Configuration management for cover art generation.

All configuration is read from environment variables. Secrets are required;
everything else has a default matching production behaviour.
"""
import os
import re
from dataclasses import dataclass
from typing import Optional

DEFAULT_DB_PATH = "cover_art.db"
DEFAULT_BLOB_DIR = "covers"
DEFAULT_STYLE_ID = "bleached-crosshatch"


@dataclass
class PipelineConfig:
    """Configuration for the cover art pipeline (reads from environment)."""

    # Required: OpenAI
    openai_api_key: str

    # Required: Replicate
    replicate_api_token: str

    # Required: Spotify application + stored-token encryption
    spotify_client_id: str
    spotify_client_secret: str
    encryption_key: str

    # Optional: storage
    db_path: str = DEFAULT_DB_PATH
    blob_dir: str = DEFAULT_BLOB_DIR
    s3_bucket: Optional[str] = None
    s3_endpoint_url: Optional[str] = None
    default_style_id: str = DEFAULT_STYLE_ID

    # Optional: models
    openai_model: str = "gpt-4o-mini"

    # Tunables
    lyrics_timeout: float = 5.0
    lyrics_concurrency: int = 5
    lyrics_truncate_chars: int = 800
    extraction_concurrency: int = 5
    llm_timeout: float = 30.0
    pipeline_timeout: float = 600.0
    image_dimensions: int = 640
    jpeg_quality: int = 40
    image_max_bytes: int = 196_608
    replicate_poll_interval: float = 1.0
    replicate_timeout: float = 120.0
    regen_threshold: float = 0.25

    @classmethod
    def from_environment(cls) -> 'PipelineConfig':
        """Load configuration from environment variables.

        Returns:
            PipelineConfig: Loaded configuration object

        Raises:
            EnvironmentError: If required environment variables are missing
        """
        required = {
            'OPENAI_API_KEY': os.getenv('OPENAI_API_KEY'),
            'REPLICATE_API_TOKEN': os.getenv('REPLICATE_API_TOKEN'),
            'SPOTIFY_CLIENT_ID': os.getenv('SPOTIFY_CLIENT_ID'),
            'SPOTIFY_CLIENT_SECRET': os.getenv('SPOTIFY_CLIENT_SECRET'),
            'ENCRYPTION_KEY': os.getenv('ENCRYPTION_KEY'),
        }

        missing = [var for var, value in required.items() if not value]
        if missing:
            raise EnvironmentError(
                f"Required environment variables missing: {', '.join(missing)}\n"
                f"Example: export ENCRYPTION_KEY=$(openssl rand -hex 32)"
            )

        return cls(
            openai_api_key=required['OPENAI_API_KEY'],
            replicate_api_token=required['REPLICATE_API_TOKEN'],
            spotify_client_id=required['SPOTIFY_CLIENT_ID'],
            spotify_client_secret=required['SPOTIFY_CLIENT_SECRET'],
            encryption_key=required['ENCRYPTION_KEY'],
            db_path=os.getenv('DISC_DB_PATH', DEFAULT_DB_PATH),
            blob_dir=os.getenv('DISC_BLOB_DIR', DEFAULT_BLOB_DIR),
            s3_bucket=os.getenv('DISC_S3_BUCKET') or None,
            s3_endpoint_url=os.getenv('DISC_S3_ENDPOINT_URL') or None,
            default_style_id=os.getenv('DISC_DEFAULT_STYLE', DEFAULT_STYLE_ID),
            openai_model=os.getenv('OPENAI_MODEL', 'gpt-4o-mini'),
            lyrics_timeout=float(os.getenv('DISC_LYRICS_TIMEOUT', '5')),
            pipeline_timeout=float(os.getenv('DISC_PIPELINE_TIMEOUT', '600')),
            replicate_timeout=float(os.getenv('DISC_REPLICATE_TIMEOUT', '120')),
        )

    def validate(self) -> None:
        """Validate secrets format and numeric tunables.

        Raises:
            ValueError: If a value is out of range
        """
        if not re.fullmatch(r"[0-9a-fA-F]{64}", self.encryption_key or ""):
            raise ValueError("Invalid encryption_key: must be 64 hex characters (32 bytes)")
        if not 0 < self.lyrics_concurrency <= 20:
            raise ValueError(
                f"Invalid lyrics_concurrency: {self.lyrics_concurrency}. Must be 1-20"
            )
        if not 0 < self.extraction_concurrency <= 20:
            raise ValueError(
                f"Invalid extraction_concurrency: {self.extraction_concurrency}. Must be 1-20"
            )
        if not 5 <= self.jpeg_quality <= 95:
            raise ValueError(f"Invalid jpeg_quality: {self.jpeg_quality}. Must be 5-95")
        if self.image_max_bytes <= 0 or self.image_dimensions <= 0:
            raise ValueError("Image size limits must be > 0")
        for name in ('lyrics_timeout', 'llm_timeout', 'pipeline_timeout',
                     'replicate_poll_interval', 'replicate_timeout'):
            if getattr(self, name) <= 0:
                raise ValueError(f"Invalid {name}: must be > 0")
        if not 0 < self.regen_threshold <= 1:
            raise ValueError(f"Invalid regen_threshold: {self.regen_threshold}. Must be in (0, 1]")

    def __repr__(self) -> str:
        """Return string representation with sensitive data masked."""
        return (
            f"PipelineConfig("
            f"openai_api_key='***', "
            f"replicate_api_token='***', "
            f"spotify_client_id='{self.spotify_client_id}', "
            f"spotify_client_secret='***', "
            f"encryption_key='***', "
            f"db_path='{self.db_path}', "
            f"blob_dir='{self.blob_dir}', "
            f"s3_bucket={self.s3_bucket!r}, "
            f"openai_model='{self.openai_model}', "
            f"pipeline_timeout={self.pipeline_timeout}"
            f")"
        )
