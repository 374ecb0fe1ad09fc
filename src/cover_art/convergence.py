"""Convergence: pick one object for the whole playlist, avoiding claimed ones."""

import json
import logging
from typing import Any, Dict, List, Sequence

from .exceptions import ConvergenceError
from .extraction import score_objects
from .llm import LLMClient
from .models import ClaimedObject, ConvergenceResult, RankedCandidate, TrackExtraction
from .prompts import CONVERGENCE_SYSTEM_PROMPT, build_convergence_prompt

logger = logging.getLogger(__name__)

CONVERGENCE_TEMPERATURE = 0.7
CONVERGENCE_MAX_TOKENS = 1500


def parse_convergence(data: Dict[str, Any]) -> ConvergenceResult:
    candidates = [
        RankedCandidate.from_dict(c, position)
        for position, c in enumerate(data.get("candidates") or [])
        if isinstance(c, dict)
    ]
    try:
        selected_index = int(data.get("selectedIndex", -1))
    except (TypeError, ValueError):
        selected_index = -1
    return ConvergenceResult(
        candidates=candidates,
        selected_index=selected_index,
        collision_notes=str(data.get("collisionNotes") or ""),
    )


def validate_convergence(result: ConvergenceResult) -> RankedCandidate:
    """Return the selected candidate.

    Raises:
        ConvergenceError: If there are no candidates or the index is out of range
    """
    if not result.candidates or not 0 <= result.selected_index < len(result.candidates):
        logger.error(f"Convergence invalid response: {json.dumps(result.to_dict())[:500]}")
        raise ConvergenceError(
            f"Convergence invalid: {len(result.candidates)} candidates, "
            f"selectedIndex={result.selected_index}"
        )
    return result.selected


async def converge_and_select(
    llm: LLMClient,
    playlist_name: str,
    extractions: List[TrackExtraction],
    exclusions: Sequence[ClaimedObject],
) -> ConvergenceResult:
    """
    Ask the LLM for three ranked candidates and a selection.

    The result is not validated here; callers must pass it through
    ``validate_convergence`` before using ``selected``.

    Args:
        llm: LLM client
        playlist_name: Playlist name shown in the prompt
        extractions: Per-track extractions
        exclusions: Active claims of the owner's other playlists

    Returns:
        ConvergenceResult with token usage attached
    """
    prompt = build_convergence_prompt(playlist_name, extractions, score_objects(extractions), exclusions)
    logger.debug(
        f"Convergence prompt built: {len(prompt)} chars, {len(extractions)} tracks, "
        f"{len(exclusions)} exclusions"
    )

    response = await llm.chat_json(
        CONVERGENCE_SYSTEM_PROMPT,
        prompt,
        temperature=CONVERGENCE_TEMPERATURE,
        max_tokens=CONVERGENCE_MAX_TOKENS,
    )
    result = parse_convergence(response.parsed)
    result.input_tokens = response.input_tokens
    result.output_tokens = response.output_tokens
    logger.info(
        f"Convergence returned {len(result.candidates)} candidates, selectedIndex={result.selected_index}"
    )
    return result
