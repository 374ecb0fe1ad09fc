"""
Cover art CLI - Command Line Interface

Subcommands:
    init-db         Create the database schema
    add-user        Register a user with an (encrypted) refresh token
    add-style       Register an art style
    sync-playlists  Import a user's Spotify playlists
    run             Scheduled run over all due users
    generate        Generate covers for specific playlists now
    sweep           Reset playlists and jobs abandoned by a crashed run
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from typing import List, Optional

from src.logger import setup_logging
from src.spotify import SpotifyClient, SpotifyError

from . import crypto
from .config import PipelineConfig
from .exceptions import APIError, PipelineError, TokenRefreshError
from .models import GenerationResult, PipelineOptions, Style, TriggerType
from .pipeline import CoverArtPipeline
from .runner import BatchRunner
from .store import Database
from .tokens import TokenManager

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """
    Create argument parser for CLI.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="python -m src.cover_art",
        description="AI cover art for Spotify playlists",
        epilog="Example: python -m src.cover_art generate --user <id> --playlist <id>",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db", metavar="PATH", help="SQLite database path (default: DISC_DB_PATH)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose debug logging")
    parser.add_argument("--version", action="version", version="%(prog)s 0.1.0")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database schema")

    add_user = sub.add_parser("add-user", help="Register a user")
    add_user.add_argument("--spotify-user-id", required=True)
    add_user.add_argument("--refresh-token", required=True, help="Plain refresh token; stored encrypted")
    add_user.add_argument("--display-name")
    add_user.add_argument("--style", help="Preferred style ID")
    add_user.add_argument("--cron-time", default="09:00", metavar="HH:MM")

    add_style = sub.add_parser("add-style", help="Register an art style")
    add_style.add_argument("--id", required=True)
    add_style.add_argument("--name", required=True)
    add_style.add_argument("--model", required=True, help="Replicate model, e.g. black-forest-labs/flux-dev")
    add_style.add_argument("--template", required=True, help="Prompt template containing {subject}")
    add_style.add_argument("--negative-prompt")
    add_style.add_argument("--lora-url")
    add_style.add_argument("--lora-scale", type=float)
    add_style.add_argument("--guidance", type=float, default=3.5)
    add_style.add_argument("--steps", type=int, default=28)
    add_style.add_argument("--seed", type=int)

    sync = sub.add_parser("sync-playlists", help="Import a user's Spotify playlists")
    sync.add_argument("--user", required=True, metavar="USER_ID")
    sync.add_argument("--owned-only", action="store_true", help="Skip playlists the user does not own")

    run = sub.add_parser("run", help="Scheduled run over due users")
    run.add_argument("--hour", type=int, help="Only users whose cron time falls in this UTC hour")

    generate = sub.add_parser("generate", help="Generate covers for specific playlists")
    generate.add_argument("--user", required=True, metavar="USER_ID")
    generate.add_argument("--playlist", required=True, action="append", metavar="PLAYLIST_ID",
                          help="Playlist ID (repeatable)")
    generate.add_argument("--style", help="Style ID (default: user's preference)")
    subject = generate.add_mutually_exclusive_group()
    subject.add_argument("--object", dest="custom_object", help="Use this object, skip analysis")
    subject.add_argument("--describe", dest="light_text", help="Derive the object from this text")
    generate.add_argument("--revision-notes", help="Extra guidance prepended to the subject")

    sweep = sub.add_parser("sweep", help="Reset stale playlists and jobs")
    sweep.add_argument("--playlist-minutes", type=int, default=15)
    sweep.add_argument("--job-minutes", type=int, default=30)

    return parser


def display_results(results: List[GenerationResult]) -> None:
    print()
    print("=" * 70)
    print("GENERATION SUMMARY")
    print("=" * 70)
    for result in results:
        status = "OK    " if result.success else "FAILED"
        line = f"{status} {result.generation_id}"
        if result.error:
            line += f"  {result.error}"
        print(line)
    succeeded = sum(1 for r in results if r.success)
    print(f"Succeeded: {succeeded}/{len(results)}  Finished: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 70)
    print()


def display_error(error: Exception) -> None:
    print()
    print("=" * 70)
    print("ERROR")
    print("=" * 70)
    if isinstance(error, (EnvironmentError, ValueError)) and "environment" in str(error).lower():
        print(f"Configuration error: {error}")
    elif isinstance(error, TokenRefreshError):
        print(f"Token refresh failed: {error}")
        print()
        print("The user may need to sign in again to grant a new refresh token.")
    elif isinstance(error, (APIError, SpotifyError)):
        print(f"API error: {error}")
    elif isinstance(error, PipelineError):
        print(f"Pipeline error: {error}")
    else:
        print(f"Unexpected error: {error}")
        print()
        print("Please check the logs for more details.")
    print("=" * 70)
    print()


async def async_main(args: argparse.Namespace) -> int:
    """
    Async main function.

    Args:
        args: Parsed CLI arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    config = PipelineConfig.from_environment()
    config.validate()
    if args.db:
        config.db_path = args.db

    db = Database(config.db_path)
    db.init_schema()

    try:
        if args.command == "init-db":
            print(f"Schema ready in {config.db_path}")
            return 0

        if args.command == "add-user":
            user_id = db.add_user(
                args.spotify_user_id,
                encrypted_refresh_token=crypto.encrypt(args.refresh_token, config.encryption_key),
                display_name=args.display_name,
                style_preference=args.style,
                cron_time=args.cron_time,
            )
            print(user_id)
            return 0

        if args.command == "add-style":
            if "{subject}" not in args.template:
                raise ValueError("Template must contain {subject}")
            db.add_style(Style(
                id=args.id,
                name=args.name,
                replicate_model=args.model,
                prompt_template=args.template,
                negative_prompt=args.negative_prompt,
                lora_url=args.lora_url,
                lora_scale=args.lora_scale,
                guidance_scale=args.guidance,
                num_inference_steps=args.steps,
                seed=args.seed,
            ))
            print(args.id)
            return 0

        if args.command == "sweep":
            runner = BatchRunner(db, pipeline=None, tokens=None, default_style_id=config.default_style_id)
            playlists, jobs = runner.sweep(args.playlist_minutes, args.job_minutes)
            print(f"Reset {playlists} playlists, expired {jobs} jobs")
            return 0

        spotify = SpotifyClient()
        pipeline = CoverArtPipeline.from_config(config, db, spotify=spotify)
        tokens = TokenManager(db, spotify, config.encryption_key,
                              config.spotify_client_id, config.spotify_client_secret)
        runner = BatchRunner(db, pipeline, tokens, default_style_id=config.default_style_id)

        try:
            if args.command == "sync-playlists":
                user = db.get_user(args.user)
                if user is None:
                    raise PipelineError(f"Unknown user {args.user}")
                access_token = await tokens.get_access_token(args.user)
                playlists = await spotify.fetch_user_playlists(access_token)
                imported = 0
                for playlist in playlists:
                    if args.owned_only and playlist.owner_id != user["spotify_user_id"]:
                        continue
                    db.add_playlist(args.user, playlist.id, playlist.name)
                    imported += 1
                print(f"Imported {imported} of {len(playlists)} playlists")
                return 0

            if args.command == "run":
                summaries = await runner.run_scheduled(args.hour)
                failed_jobs = [s for s in summaries if s.error]
                for s in summaries:
                    print(f"job {s.job_id} user {s.user_id}: {s.completed}/{s.total} ok, {s.failed} failed"
                          + (f" ({s.error})" if s.error else ""))
                return 1 if failed_jobs else 0

            if args.command == "generate":
                options = PipelineOptions(
                    trigger_type=TriggerType.MANUAL,
                    custom_object=args.custom_object,
                    light_extraction_text=args.light_text,
                    revision_notes=args.revision_notes,
                )
                results = await runner.trigger(args.user, args.playlist, options, style_id=args.style)
                display_results(results)
                return 0 if results and all(r.success for r in results) else 1
        finally:
            await pipeline.close()

        return 1
    finally:
        db.close()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging("DEBUG" if args.verbose else None)

    try:
        return asyncio.run(async_main(args))
    except KeyboardInterrupt:
        print()
        print("Cancelled by user")
        return 1
    except Exception as e:
        display_error(e)
        if args.verbose:
            logger.exception("Detailed error traceback:")
        return 1


if __name__ == "__main__":
    sys.exit(main())
