"""
Cover art generation pipeline.

One call to ``CoverArtPipeline.generate_for_playlist`` produces exactly one
generation record, and on success one analysis, one active claim and a new
cover on Spotify. Failures at any stage are caught, recorded with whatever
cost was already incurred, and reported through the returned
GenerationResult; the method itself never raises.

Stages:
    fetch tracks -> change detection -> subject resolution
    (custom object | light extraction | lyrics + extraction + convergence)
    -> image generation -> archive -> compress -> upload -> persist
"""

import base64
import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from src.spotify import SpotifyClient

from .blobs import LocalBlobStore, S3BlobStore, archive_key
from .changes import detect_changes, no_changes
from .config import PipelineConfig
from .convergence import converge_and_select, validate_convergence
from .exceptions import PipelineError, PipelineTimeoutError
from .extraction import ThemeExtractor, light_extract
from .imaging import compress_for_upload, compute_perceptual_hash
from .llm import LLMClient
from .lyrics import LyricsFetcher
from .models import (
    ConvergenceResult,
    GenerationResult,
    PipelineOptions,
    PipelineStep,
    PlaylistRef,
    Style,
    Tier,
    Track,
    TrackExtraction,
)
from .pricing import RunCosts, build_cost_breakdown
from .progress import ProgressTracker
from .replicate import ReplicateClient
from .store import Database
from .usage import ERROR_MESSAGE_LIMIT, UsageLedger

logger = logging.getLogger(__name__)

PIPELINE_TIMEOUT_SECONDS = 600.0
USER_SPECIFIED = "user-specified"


def revision_prefix(notes: Optional[str]) -> str:
    return f"Revision guidance: {notes}. " if notes else ""


def extraction_progress(completed: int, total: int, extractions: List[TrackExtraction],
                        tokens_used: int) -> Dict[str, Any]:
    objects = [o for e in extractions for o in e.objects]
    return {
        "completed": completed,
        "total": total,
        "objectCount": len(objects),
        "topObjects": [o.object for o in objects if o.tier == Tier.HIGH][:8],
        "tokensUsed": tokens_used,
        "perTrack": [
            {
                "trackName": e.track_name,
                "artist": e.artist,
                "objects": [
                    {"object": o.object, "tier": o.tier.value, "reasoning": o.reasoning[:80]}
                    for o in e.objects
                ],
            }
            for e in extractions
        ],
    }


class CoverArtPipeline:
    """
    Orchestrates one cover generation for one playlist.

    Example:
        >>> pipeline = CoverArtPipeline.from_config(config, db)
        >>> result = await pipeline.generate_for_playlist(playlist, style, access_token)
        >>> if not result.success:
        ...     print(result.error)
    """

    def __init__(
        self,
        db: Database,
        spotify: SpotifyClient,
        llm: LLMClient,
        replicate: ReplicateClient,
        blobs,
        lyrics: Optional[LyricsFetcher] = None,
        extractor: Optional[ThemeExtractor] = None,
        ledger: Optional[UsageLedger] = None,
        timeout: float = PIPELINE_TIMEOUT_SECONDS,
        image_max_bytes: int = 196_608,
        image_dimensions: int = 640,
        jpeg_quality: int = 40,
        regen_threshold: float = 0.25,
    ):
        """
        Args:
            db: Relational store
            spotify: Spotify client
            llm: LLM client
            replicate: Image generation client
            blobs: LocalBlobStore or S3BlobStore for full-resolution archives
            lyrics: Lyric fetcher (defaults to one backed by ``db``)
            extractor: Theme extractor (defaults to one backed by ``llm`` and ``db``)
            ledger: Usage ledger (defaults to one backed by ``db``)
            timeout: Overall deadline in seconds, checked between stages
            image_max_bytes: JPEG byte ceiling for the uploaded cover
            image_dimensions: Cover width and height in pixels
            jpeg_quality: First JPEG quality tried when compressing
            regen_threshold: Share of new tracks that marks a significant change
        """
        self.db = db
        self.spotify = spotify
        self.llm = llm
        self.replicate = replicate
        self.blobs = blobs
        self.lyrics = lyrics or LyricsFetcher(db)
        self.extractor = extractor or ThemeExtractor(llm, db)
        self.ledger = ledger or UsageLedger(db)
        self.timeout = timeout
        self.image_max_bytes = image_max_bytes
        self.image_dimensions = image_dimensions
        self.jpeg_quality = jpeg_quality
        self.regen_threshold = regen_threshold

    @classmethod
    def from_config(cls, config: PipelineConfig, db: Database,
                    spotify: Optional[SpotifyClient] = None) -> "CoverArtPipeline":
        llm = LLMClient(api_key=config.openai_api_key, model=config.openai_model,
                        timeout=config.llm_timeout)
        if config.s3_bucket:
            blobs = S3BlobStore(config.s3_bucket, endpoint_url=config.s3_endpoint_url)
        else:
            blobs = LocalBlobStore(config.blob_dir)
        return cls(
            db=db,
            spotify=spotify or SpotifyClient(),
            llm=llm,
            replicate=ReplicateClient(
                config.replicate_api_token,
                poll_interval=config.replicate_poll_interval,
                poll_timeout=config.replicate_timeout,
            ),
            blobs=blobs,
            lyrics=LyricsFetcher(
                db,
                timeout=config.lyrics_timeout,
                concurrency=config.lyrics_concurrency,
                truncate_chars=config.lyrics_truncate_chars,
            ),
            extractor=ThemeExtractor(llm, db, concurrency=config.extraction_concurrency),
            timeout=config.pipeline_timeout,
            image_max_bytes=config.image_max_bytes,
            image_dimensions=config.image_dimensions,
            jpeg_quality=config.jpeg_quality,
            regen_threshold=config.regen_threshold,
        )

    async def close(self) -> None:
        await self.spotify.close()
        await self.replicate.close()
        await self.lyrics.close()

    async def generate_for_playlist(
        self,
        playlist: PlaylistRef,
        style: Style,
        access_token: str,
        options: Optional[PipelineOptions] = None,
    ) -> GenerationResult:
        """
        Generate and upload a new cover for ``playlist``.

        Args:
            playlist: Target playlist
            style: Art style to render in
            access_token: Owner's Spotify access token
            options: Trigger type, job ID, revision notes, custom object or light-extraction text

        Returns:
            GenerationResult; ``success`` is False with ``error`` set on any failure
        """
        options = options or PipelineOptions()
        generation_id = uuid.uuid4().hex
        started = time.monotonic()
        deadline = started + self.timeout
        costs = RunCosts(llm_model=self.llm.model, image_model=style.replicate_model)
        tracker = ProgressTracker(self.db, playlist.id, generation_id)

        def check_timeout() -> None:
            if time.monotonic() > deadline:
                raise PipelineTimeoutError(f"Pipeline timed out after {self.timeout:.0f}s")

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            self.db.create_generation(
                generation_id, playlist, style.id, options.trigger_type.value,
                model_name=self.llm.model, image_model=style.replicate_model,
            )

            tracker.advance(PipelineStep.FETCH_TRACKS)
            logger.info(f"Fetching tracks for '{playlist.name}'")
            tracks = [
                Track.from_spotify(t)
                for t in await self.spotify.fetch_playlist_tracks(access_token, playlist.spotify_playlist_id)
            ]
            if not tracks:
                raise PipelineError("Playlist has no tracks")

            previous = self.db.latest_track_snapshot(playlist.id)
            changes = detect_changes(previous, tracks, self.regen_threshold) if previous is not None else None
            if changes:
                logger.info(
                    f"Change detection: {changes.outlier_count} new tracks, threshold "
                    f"{changes.outlier_threshold:.0%}, regenerate={changes.should_regenerate}"
                )
            tracker.advance(PipelineStep.FETCH_TRACKS, {
                "trackCount": len(tracks),
                "trackNames": [t.label for t in tracks],
            })

            extractions: List[TrackExtraction] = []
            convergence: Optional[ConvergenceResult] = None

            if options.custom_object:
                logger.info(f"Custom object override: '{options.custom_object}'")
                chosen_object = options.custom_object
                aesthetic_context = USER_SPECIFIED
                self._skip_analysis_steps(tracker, len(tracks), {
                    "chosenObject": chosen_object,
                    "aestheticContext": USER_SPECIFIED,
                    "collisionNotes": "",
                    "candidates": [{
                        "object": chosen_object,
                        "aestheticContext": USER_SPECIFIED,
                        "reasoning": "Custom object override",
                        "rank": 1,
                    }],
                })
                subject = revision_prefix(options.revision_notes) + chosen_object

            elif options.light_extraction_text:
                logger.info(f"Light extraction from: '{options.light_extraction_text}'")
                exclusions = self.db.active_claims_excluding(playlist.user_id, playlist.id)
                costs.used_light_extraction = True
                try:
                    extracted = await light_extract(
                        self.llm, options.light_extraction_text, playlist.name, exclusions
                    )
                except PipelineError as e:
                    costs.convergence_input_tokens = e.input_tokens
                    costs.convergence_output_tokens = e.output_tokens
                    raise
                costs.convergence_input_tokens = extracted.input_tokens
                costs.convergence_output_tokens = extracted.output_tokens
                chosen_object = extracted.object
                aesthetic_context = extracted.aesthetic_context
                self._skip_analysis_steps(tracker, len(tracks), {
                    "chosenObject": extracted.object,
                    "aestheticContext": extracted.aesthetic_context,
                    "collisionNotes": f'Light extraction from user text: "{options.light_extraction_text}"',
                    "candidates": [{
                        "object": extracted.object,
                        "aestheticContext": extracted.aesthetic_context,
                        "reasoning": extracted.reasoning,
                        "rank": 1,
                    }],
                })
                subject = (
                    revision_prefix(options.revision_notes)
                    + f"{extracted.object}, {extracted.aesthetic_context}"
                )

            else:
                check_timeout()
                tracker.advance(PipelineStep.FETCH_LYRICS)
                tracks = await self.lyrics.fetch_batch(tracks)
                lyrics_found = sum(1 for t in tracks if t.lyrics_found)

                check_timeout()
                tracker.advance(PipelineStep.FETCH_LYRICS, {
                    "found": lyrics_found,
                    "total": len(tracks),
                    "tracks": [
                        {
                            "name": t.name,
                            "artist": t.artist,
                            "found": t.lyrics_found,
                            "snippet": t.lyrics[:120] if t.lyrics else None,
                        }
                        for t in tracks
                    ],
                })
                tracker.advance(PipelineStep.EXTRACT_THEMES)

                batch = await self.extractor.extract_themes(
                    tracks,
                    on_progress=lambda completed, total, done, tokens: tracker.advance(
                        PipelineStep.EXTRACT_THEMES,
                        extraction_progress(completed, total, done, tokens),
                    ),
                )
                extractions = batch.extractions
                costs.extraction_input_tokens = batch.input_tokens
                costs.extraction_output_tokens = batch.output_tokens
                logger.info(
                    f"Extracted objects for {len(extractions)} tracks "
                    f"({batch.input_tokens}+{batch.output_tokens} tokens, {batch.cache_hits} cached)"
                )

                check_timeout()
                exclusions = self.db.active_claims_excluding(playlist.user_id, playlist.id)
                logger.info(f"{len(exclusions)} claimed objects to avoid")
                tracker.advance(PipelineStep.EXTRACT_THEMES, extraction_progress(
                    len(extractions), len(tracks), extractions,
                    batch.input_tokens + batch.output_tokens,
                ))
                tracker.advance(PipelineStep.SELECT_THEME)

                try:
                    convergence = await converge_and_select(self.llm, playlist.name, extractions, exclusions)
                except Exception as e:
                    costs.convergence_input_tokens = getattr(e, "input_tokens", 0)
                    costs.convergence_output_tokens = getattr(e, "output_tokens", 0)
                    raise PipelineError(f"Convergence failed: {e}") from e
                costs.convergence_input_tokens = convergence.input_tokens
                costs.convergence_output_tokens = convergence.output_tokens

                selected = validate_convergence(convergence)
                chosen_object = selected.object
                aesthetic_context = selected.aesthetic_context
                logger.info(f"Selected '{selected.object}': {selected.aesthetic_context[:80]}")

                tracker.advance(PipelineStep.SELECT_THEME, {
                    "chosenObject": selected.object,
                    "aestheticContext": selected.aesthetic_context,
                    "collisionNotes": convergence.collision_notes,
                    "candidates": [c.to_dict() for c in convergence.candidates],
                })
                tracker.advance(PipelineStep.GENERATE_IMAGE)
                subject = (
                    revision_prefix(options.revision_notes)
                    + f"{selected.object}, {selected.aesthetic_context}"
                )

            check_timeout()
            logger.info(f"Generating image for '{playlist.name}' with style '{style.name}'")
            image = await self.replicate.generate_image(style, subject)
            costs.image_generated = True

            image_bytes = await self.replicate.download_image(image.url)

            check_timeout()
            key = archive_key(playlist.user_id, playlist.spotify_playlist_id)
            await self.blobs.put(key, image_bytes, content_type="image/png")

            tracker.advance(PipelineStep.GENERATE_IMAGE, {
                "prompt": image.prompt,
                "styleName": style.name,
                "predictionId": image.prediction_id,
                "subject": subject,
                "styleTemplate": style.prompt_template,
            })
            tracker.advance(PipelineStep.UPLOAD)

            jpeg_base64 = compress_for_upload(
                image_bytes, max_bytes=self.image_max_bytes, dimensions=self.image_dimensions,
                start_quality=self.jpeg_quality,
            )
            cover_phash = compute_perceptual_hash(base64.b64decode(jpeg_base64))

            check_timeout()
            await self.spotify.upload_playlist_cover(access_token, playlist.spotify_playlist_id, jpeg_base64)
            tracker.advance(PipelineStep.UPLOAD, {"r2Key": key})

            duration_ms = elapsed_ms()
            change_report = changes or no_changes()
            lyrics_found = sum(1 for t in tracks if t.lyrics_found)

            analysis_id = self.db.insert_analysis(
                playlist_id=playlist.id,
                user_id=playlist.user_id,
                generation_id=generation_id,
                track_snapshot=[t.to_snapshot() for t in tracks],
                track_extractions=[e.to_dict() for e in extractions],
                convergence_result=convergence.to_dict() if convergence else None,
                chosen_object=chosen_object,
                aesthetic_context=aesthetic_context,
                style_id=style.id,
                tracks_added=change_report.tracks_added,
                tracks_removed=change_report.tracks_removed,
                outlier_count=change_report.outlier_count,
                outlier_threshold=change_report.outlier_threshold,
                regeneration_triggered=change_report.should_regenerate,
                status="partial" if lyrics_found < len(tracks) else "completed",
            )

            # Two separate writes: a crash between them leaves the playlist with no active claim
            self.db.supersede_claims(playlist.id)
            claim_id = self.db.insert_claim(
                user_id=playlist.user_id,
                playlist_id=playlist.id,
                object_name=chosen_object,
                aesthetic_context=aesthetic_context,
                source_generation_id=generation_id,
            )

            breakdown = build_cost_breakdown(costs.completed_steps())
            self.db.complete_generation(
                generation_id,
                symbolic_object=chosen_object,
                prompt=image.prompt,
                duration_ms=duration_ms,
                cost_usd=breakdown["total_usd"],
                cost_breakdown=breakdown,
                replicate_prediction_id=image.prediction_id,
                r2_key=key,
                analysis_id=analysis_id,
                claimed_object_id=claim_id,
                llm_input_tokens=costs.input_tokens,
                llm_output_tokens=costs.output_tokens,
                cover_phash=cover_phash,
            )

            self.ledger.record_run(
                costs,
                user_id=playlist.user_id,
                generation_id=generation_id,
                playlist_id=playlist.id,
                style_id=style.id,
                job_id=options.job_id,
                trigger_source=options.trigger_type.usage_source,
                duration_ms=duration_ms,
            )

            self.db.mark_playlist_generated(playlist.id)
            logger.info(f"Completed '{playlist.name}' in {duration_ms}ms")
            return GenerationResult(success=True, generation_id=generation_id)

        except Exception as e:
            error_message = str(e) or type(e).__name__
            logger.error(f"Generation failed for '{playlist.name}': {error_message}")
            self._record_failure(playlist, style, options, generation_id, costs,
                                 error_message, elapsed_ms())
            return GenerationResult(success=False, generation_id=generation_id, error=error_message)

    @staticmethod
    def _skip_analysis_steps(tracker: ProgressTracker, track_count: int,
                             selection: Dict[str, Any]) -> None:
        """Fast-forward progress through the steps a shortcut path does not run."""
        tracker.advance(PipelineStep.FETCH_LYRICS)
        tracker.advance(PipelineStep.FETCH_LYRICS, {"found": 0, "total": track_count, "tracks": []})
        tracker.advance(PipelineStep.EXTRACT_THEMES)
        tracker.advance(PipelineStep.EXTRACT_THEMES, extraction_progress(0, 0, [], 0))
        tracker.advance(PipelineStep.SELECT_THEME)
        tracker.advance(PipelineStep.SELECT_THEME, selection)
        tracker.advance(PipelineStep.GENERATE_IMAGE)

    def _record_failure(self, playlist: PlaylistRef, style: Style, options: PipelineOptions,
                        generation_id: str, costs: RunCosts, error_message: str,
                        duration_ms: int) -> None:
        """Mark the generation and playlist failed and bill what was already spent."""
        breakdown = build_cost_breakdown(costs.partial_steps())
        try:
            self.db.fail_generation(
                generation_id,
                error_message=error_message[:ERROR_MESSAGE_LIMIT],
                duration_ms=duration_ms,
                cost_usd=breakdown["total_usd"] if breakdown else None,
                cost_breakdown=breakdown,
                llm_input_tokens=costs.input_tokens,
                llm_output_tokens=costs.output_tokens,
            )
        except Exception as e:
            logger.error(f"Failed to record generation failure for {generation_id}: {e}")

        # Never raises; write failures are logged by the ledger
        self.ledger.record_run(
            costs,
            user_id=playlist.user_id,
            generation_id=generation_id,
            playlist_id=playlist.id,
            style_id=style.id,
            job_id=options.job_id,
            trigger_source=options.trigger_type.usage_source,
            error_message=error_message,
        )

        try:
            self.db.mark_playlist_failed(playlist.id)
        except Exception as e:
            logger.error(f"Failed to mark playlist {playlist.id} failed: {e}")
