"""
Model pricing and per-run cost accounting.

LLM costs are computed from token counts; image costs are flat per
generation. All money is Decimal and only converted to float when written
to the database or JSON.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

LLM_MODEL = "gpt-4o-mini"

# USD per million tokens
MODEL_PRICING: Dict[str, Dict[str, Decimal]] = {
    "gpt-4o-mini": {"input": Decimal("0.15"), "output": Decimal("0.60")},
}

# USD per image
IMAGE_PRICING: Dict[str, Decimal] = {
    "stability-ai/stable-diffusion-3.5-large": Decimal("0.035"),
}
DEFAULT_IMAGE_COST = Decimal("0.04")

_MILLION = Decimal(1_000_000)


def calculate_llm_cost(model: str, input_tokens: int, output_tokens: int) -> Decimal:
    """Cost of one or more LLM calls; unknown models cost 0 so the gap shows up in reports."""
    pricing = MODEL_PRICING.get(model)
    if pricing is None:
        logger.warning(f"No pricing for LLM model {model}, recording zero cost")
        return Decimal("0")
    return (
        Decimal(input_tokens) / _MILLION * pricing["input"]
        + Decimal(output_tokens) / _MILLION * pricing["output"]
    )


def calculate_image_cost(model: str) -> Decimal:
    """Cost of one image; style models are user-configurable, so unknown ones get a default."""
    return IMAGE_PRICING.get(model, DEFAULT_IMAGE_COST)


def llm_unit_cost(model: str) -> Optional[Decimal]:
    pricing = MODEL_PRICING.get(model)
    return pricing["input"] if pricing else None


@dataclass
class CostStep:
    step: str
    model: str
    cost_usd: Decimal
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"step": self.step, "model": self.model, "cost_usd": float(self.cost_usd)}
        if self.input_tokens is not None:
            data["input_tokens"] = self.input_tokens
            data["output_tokens"] = self.output_tokens
        return data


@dataclass
class RunCosts:
    """Token counters and image flag for one pipeline run.

    Lives outside the pipeline's try block so a failure can still bill what
    was spent before it.
    """

    llm_model: str
    image_model: str
    extraction_input_tokens: int = 0
    extraction_output_tokens: int = 0
    convergence_input_tokens: int = 0
    convergence_output_tokens: int = 0
    image_generated: bool = False
    used_light_extraction: bool = False

    @property
    def input_tokens(self) -> int:
        return self.extraction_input_tokens + self.convergence_input_tokens

    @property
    def output_tokens(self) -> int:
        return self.extraction_output_tokens + self.convergence_output_tokens

    @property
    def has_extraction_tokens(self) -> bool:
        return self.extraction_input_tokens > 0 or self.extraction_output_tokens > 0

    @property
    def has_convergence_tokens(self) -> bool:
        return self.convergence_input_tokens > 0 or self.convergence_output_tokens > 0

    def extraction_step(self) -> CostStep:
        return CostStep(
            step="extract_themes",
            model=self.llm_model,
            cost_usd=calculate_llm_cost(
                self.llm_model, self.extraction_input_tokens, self.extraction_output_tokens
            ),
            input_tokens=self.extraction_input_tokens,
            output_tokens=self.extraction_output_tokens,
        )

    def convergence_step(self) -> CostStep:
        return CostStep(
            step="convergence",
            model=self.llm_model,
            cost_usd=calculate_llm_cost(
                self.llm_model, self.convergence_input_tokens, self.convergence_output_tokens
            ),
            input_tokens=self.convergence_input_tokens,
            output_tokens=self.convergence_output_tokens,
        )

    def image_step(self) -> CostStep:
        return CostStep(
            step="image_generation",
            model=self.image_model,
            cost_usd=calculate_image_cost(self.image_model),
        )

    def completed_steps(self) -> List[CostStep]:
        return [self.extraction_step(), self.convergence_step(), self.image_step()]

    def partial_steps(self) -> List[CostStep]:
        """Only the steps that actually incurred cost before a failure."""
        steps = []
        if self.has_extraction_tokens:
            steps.append(self.extraction_step())
        if self.has_convergence_tokens:
            steps.append(self.convergence_step())
        if self.image_generated:
            steps.append(self.image_step())
        return steps


def build_cost_breakdown(steps: List[CostStep]) -> Optional[Dict[str, Any]]:
    """``{"steps": [...], "total_usd": float}``, or None when there are no steps."""
    if not steps:
        return None
    total = sum((s.cost_usd for s in steps), Decimal("0"))
    return {"steps": [s.to_dict() for s in steps], "total_usd": float(total)}
