from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from toon_engine.schemas.job import SceneAnalysis
from toon_engine.services.gemini.client import ImageModelClient
from toon_engine.services.gemini.types import ImagePart
from toon_engine.services.prompt_builder import build_prompt_parts
from toon_engine.services.quality_gate import QualityChecker

logger = logging.getLogger(__name__)


MAX_RETRIES = 2
RETRY_BACKOFF_S = 1.0
NO_IMAGE_ERROR = "No image in model response"


@dataclass
class GenerationResult:
    image: ImagePart | None = None
    error: str | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.image is not None


async def generate_with_quality_gate(
    model: ImageModelClient,
    gate: QualityChecker | None,
    source: ImagePart,
    style_id: str,
    scene_analysis: SceneAnalysis | None = None,
    style_anchor: ImagePart | None = None,
    *,
    max_retries: int = MAX_RETRIES,
    backoff_s: float = RETRY_BACKOFF_S,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> GenerationResult:
    """Convert one photo, escalating the prompt each time a try comes back empty or rejected.

    The last try skips the quality gate so an imperfect image still beats none.
    """
    last_error: str | None = None
    final_attempt = max(0, int(max_retries))

    for attempt in range(final_attempt + 1):
        build = build_prompt_parts(
            source,
            style_id,
            scene_analysis=scene_analysis,
            style_anchor=style_anchor,
            retry_level=attempt,
        )
        try:
            image = await model.generate(build.parts, build.temperature)
        except Exception as exc:
            last_error = str(exc) or type(exc).__name__
            logger.warning("generation.attempt.error attempt=%s error=%s", attempt, last_error)
            image = None

        if image is None:
            if attempt < final_attempt:
                await sleep(backoff_s)
            continue
        last_error = None

        if attempt == final_attempt or gate is None:
            return GenerationResult(image=image, attempts=attempt + 1)

        verdict = await gate.assess(image, scene_analysis, style_anchor is not None)
        if verdict.passed:
            return GenerationResult(image=image, attempts=attempt + 1)

        logger.info(
            "generation.attempt.rejected attempt=%s failed=%s",
            attempt,
            ",".join(verdict.failed_dimensions),
        )
        await sleep(backoff_s)

    return GenerationResult(error=last_error or NO_IMAGE_ERROR, attempts=final_attempt + 1)
