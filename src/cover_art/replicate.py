"""
Replicate REST client for cover image generation.

Resolves the style model's latest version, creates a prediction (asking
Replicate to hold the connection until done) and polls when it is not
finished yet.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

import httpx

from src.util.retry import REPLICATE_RETRY_ATTEMPTS, with_retry

from .exceptions import ImageGenerationError
from .models import GeneratedImage, Style

logger = logging.getLogger(__name__)

REPLICATE_API_BASE = "https://api.replicate.com/v1"
MODEL_LOOKUP_TIMEOUT = 15.0
PREDICTION_TIMEOUT = 60.0
PREDICTION_RETRY_BASE_DELAY = 5.0
POLL_INTERVAL = 1.0
POLL_TIMEOUT = 120.0
MAX_CONSECUTIVE_POLL_ERRORS = 3
DOWNLOAD_TIMEOUT = 60.0


def build_input(style: Style, prompt: str) -> Dict[str, Any]:
    """Model input for a style; flux-2 models take ``steps``, older ones ``num_inference_steps``."""
    steps_key = "steps" if "flux-2-" in style.replicate_model else "num_inference_steps"
    payload: Dict[str, Any] = {
        "prompt": prompt,
        "aspect_ratio": "1:1",
        steps_key: style.num_inference_steps,
        "guidance": style.guidance_scale,
        "output_format": "png",
    }
    if style.lora_url:
        payload["hf_lora"] = style.lora_url
        payload["lora_scale"] = style.lora_scale
    if style.negative_prompt:
        payload["negative_prompt"] = style.negative_prompt
    if style.seed is not None:
        payload["seed"] = style.seed
    return payload


def output_url(prediction: Dict[str, Any]) -> str:
    """Normalize ``output`` (a URL or a list of URLs) to one URL."""
    output = prediction.get("output")
    if isinstance(output, list):
        output = output[0] if output else None
    if not output:
        raise ImageGenerationError("Replicate returned no output")
    return output


class ReplicateClient:
    """
    Async Replicate client.

    Example:
        >>> async with ReplicateClient(api_token) as replicate:
        ...     image = await replicate.generate_image(style, "a paper boat, dusk light")
        ...     data = await replicate.download_image(image.url)
    """

    def __init__(
        self,
        api_token: str,
        http_client: Optional[httpx.AsyncClient] = None,
        poll_interval: float = POLL_INTERVAL,
        poll_timeout: float = POLL_TIMEOUT,
        retry_attempts: int = REPLICATE_RETRY_ATTEMPTS,
        retry_base_delay: float = PREDICTION_RETRY_BASE_DELAY,
    ):
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient()
        self.api_token = api_token
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay

    async def __aenter__(self) -> "ReplicateClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_token}"}

    async def get_latest_version(self, model: str) -> str:
        async def call() -> str:
            response = await self.client.get(
                f"{REPLICATE_API_BASE}/models/{model}",
                headers=self._headers,
                timeout=MODEL_LOOKUP_TIMEOUT,
            )
            if not response.is_success:
                raise ImageGenerationError(f"Replicate model lookup failed ({response.status_code})")
            version = (response.json().get("latest_version") or {}).get("id")
            if not version:
                raise ImageGenerationError(f"No latest version found for model {model}")
            return version

        return await with_retry(call, max_attempts=self.retry_attempts, label="Replicate model lookup")

    async def create_prediction(self, version: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async def call() -> Dict[str, Any]:
            try:
                response = await self.client.post(
                    f"{REPLICATE_API_BASE}/predictions",
                    json={"version": version, "input": payload},
                    headers={**self._headers, "Prefer": "wait"},
                    timeout=PREDICTION_TIMEOUT,
                )
            except httpx.TimeoutException as e:
                raise ImageGenerationError(
                    f"Replicate prediction request timed out after {PREDICTION_TIMEOUT:.0f}s"
                ) from e
            if not response.is_success:
                raise ImageGenerationError(
                    f"Replicate create prediction failed ({response.status_code}): {response.text[:500]}"
                )
            return response.json()

        return await with_retry(
            call,
            max_attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            label="Replicate create prediction",
        )

    async def poll_prediction(self, prediction_id: str) -> Dict[str, Any]:
        """Poll until the prediction succeeds.

        Up to three consecutive request failures are tolerated; a successful
        poll resets the count.

        Raises:
            ImageGenerationError: On failure, cancellation, repeated poll errors, or timeout
        """
        deadline = time.monotonic() + self.poll_timeout
        consecutive_errors = 0

        while time.monotonic() < deadline:
            try:
                response = await self.client.get(
                    f"{REPLICATE_API_BASE}/predictions/{prediction_id}", headers=self._headers
                )
                if not response.is_success:
                    raise ImageGenerationError(f"Replicate poll failed ({response.status_code})")
            except (httpx.HTTPError, ImageGenerationError) as e:
                consecutive_errors += 1
                if consecutive_errors >= MAX_CONSECUTIVE_POLL_ERRORS:
                    raise ImageGenerationError(
                        f"Replicate poll failed after {MAX_CONSECUTIVE_POLL_ERRORS} consecutive errors: {e}"
                    ) from e
                logger.warning(
                    f"Replicate poll error ({consecutive_errors}/{MAX_CONSECUTIVE_POLL_ERRORS}): {e}"
                )
                await asyncio.sleep(self.poll_interval)
                continue

            consecutive_errors = 0
            prediction = response.json()
            status = prediction.get("status")
            if status == "succeeded":
                return prediction
            if status in ("failed", "canceled"):
                raise ImageGenerationError(f"Replicate prediction {status}: {prediction.get('error')}")

            await asyncio.sleep(self.poll_interval)

        raise ImageGenerationError(f"Replicate prediction timed out after {self.poll_timeout:.0f}s")

    async def generate_image(self, style: Style, subject: str) -> GeneratedImage:
        """
        Render ``subject`` in ``style``.

        Args:
            style: Style with model, template and sampler settings
            subject: Text substituted for ``{subject}`` in the template

        Returns:
            GeneratedImage with the output URL, prediction ID and final prompt
        """
        prompt = style.render_prompt(subject)
        payload = build_input(style, prompt)

        logger.info(f"Resolving latest version for {style.replicate_model}")
        version = await self.get_latest_version(style.replicate_model)

        prediction = await self.create_prediction(version, payload)
        if prediction.get("status") != "succeeded":
            logger.info(f"Polling prediction {prediction.get('id')}")
            prediction = await self.poll_prediction(prediction["id"])

        url = output_url(prediction)
        logger.info(f"Image generated: {prediction['id']}")
        return GeneratedImage(url=url, prediction_id=prediction["id"], prompt=prompt,
                              model=style.replicate_model)

    async def download_image(self, url: str) -> bytes:
        response = await self.client.get(url, timeout=DOWNLOAD_TIMEOUT, follow_redirects=True)
        if not response.is_success:
            raise ImageGenerationError(f"Failed to download Replicate output ({response.status_code})")
        return response.content
