"""Usage ledger: one row per billable action for billing and analytics."""

import logging
from decimal import Decimal
from typing import Optional

from .pricing import RunCosts, calculate_image_cost, llm_unit_cost
from .store import Database

logger = logging.getLogger(__name__)

ERROR_MESSAGE_LIMIT = 500

ACTION_EXTRACTION = "llm_extraction"
ACTION_CONVERGENCE = "llm_convergence"
ACTION_LIGHT_EXTRACTION = "llm_light_extraction"
ACTION_IMAGE = "image_generation"


class UsageLedger:
    """Records usage events. Never raises: billing must not break a generation."""

    def __init__(self, db: Database):
        self.db = db

    def record(
        self,
        *,
        user_id: str,
        action_type: str,
        model: str,
        cost_usd: Decimal,
        generation_id: Optional[str] = None,
        playlist_id: Optional[str] = None,
        style_id: Optional[str] = None,
        job_id: Optional[str] = None,
        tokens_in: Optional[int] = None,
        tokens_out: Optional[int] = None,
        duration_ms: Optional[int] = None,
        model_unit_cost: Optional[Decimal] = None,
        trigger_source: str = "user",
        status: str = "success",
        error_message: Optional[str] = None,
    ) -> bool:
        """Insert one usage event.

        Returns:
            True if the row was written
        """
        try:
            self.db.insert_usage_event({
                "user_id": user_id,
                "action_type": action_type,
                "model": model,
                "cost_usd": float(cost_usd),
                "generation_id": generation_id,
                "playlist_id": playlist_id,
                "style_id": style_id,
                "job_id": job_id,
                "tokens_in": tokens_in,
                "tokens_out": tokens_out,
                "duration_ms": duration_ms,
                "model_unit_cost": float(model_unit_cost) if model_unit_cost is not None else None,
                "trigger_source": trigger_source,
                "status": status,
                "error_message": error_message[:ERROR_MESSAGE_LIMIT] if error_message else None,
            })
        except Exception as e:
            logger.error(f"Failed to record usage event {action_type}: {e}")
            return False
        return True

    def record_run(
        self,
        costs: RunCosts,
        *,
        user_id: str,
        generation_id: str,
        playlist_id: str,
        style_id: str,
        job_id: Optional[str],
        trigger_source: str,
        duration_ms: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> int:
        """Record every billable step of a run; failed runs bill only what was spent.

        Returns:
            Number of events written
        """
        failed = error_message is not None
        common = dict(
            user_id=user_id,
            generation_id=generation_id,
            playlist_id=playlist_id,
            style_id=style_id,
            job_id=job_id,
            trigger_source=trigger_source,
            status="failed" if failed else "success",
            error_message=error_message,
        )
        written = 0

        if costs.has_extraction_tokens:
            step = costs.extraction_step()
            written += self.record(
                action_type=ACTION_EXTRACTION,
                model=costs.llm_model,
                cost_usd=step.cost_usd,
                tokens_in=costs.extraction_input_tokens,
                tokens_out=costs.extraction_output_tokens,
                model_unit_cost=llm_unit_cost(costs.llm_model),
                **common,
            )

        if costs.has_convergence_tokens:
            step = costs.convergence_step()
            written += self.record(
                action_type=ACTION_LIGHT_EXTRACTION if costs.used_light_extraction else ACTION_CONVERGENCE,
                model=costs.llm_model,
                cost_usd=step.cost_usd,
                tokens_in=costs.convergence_input_tokens,
                tokens_out=costs.convergence_output_tokens,
                model_unit_cost=llm_unit_cost(costs.llm_model),
                **common,
            )

        if costs.image_generated or not failed:
            image_cost = calculate_image_cost(costs.image_model)
            written += self.record(
                action_type=ACTION_IMAGE,
                model=costs.image_model,
                cost_usd=image_cost,
                duration_ms=None if failed else duration_ms,
                model_unit_cost=image_cost,
                **common,
            )

        return written
