from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Protocol

from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from toon_engine.core.settings import settings
from toon_engine.schemas.job import SceneAnalysis
from toon_engine.services.gemini.types import ImagePart

logger = logging.getLogger(__name__)


DIMENSIONS = ("illustration_completeness", "character_consistency", "environment_completeness")
COMPLETENESS_THRESHOLD = 7
CONSISTENCY_THRESHOLD_ANCHORED = 6
CONSISTENCY_THRESHOLD_UNANCHORED = 5
MISSING_SCORE = 10


class DimensionScore(BaseModel):
    name: str
    score: int
    threshold: int
    passed: bool


class QualityAssessment(BaseModel):
    passed: bool
    failed_dimensions: list[str] = Field(default_factory=list)
    dimensions: list[DimensionScore] = Field(default_factory=list)


class QualityChecker(Protocol):
    async def assess(
        self,
        candidate: ImagePart,
        scene_analysis: SceneAnalysis | None,
        has_style_anchor: bool,
    ) -> QualityAssessment: ...


def thresholds_for(has_style_anchor: bool) -> dict[str, int]:
    return {
        "illustration_completeness": COMPLETENESS_THRESHOLD,
        "character_consistency": (
            CONSISTENCY_THRESHOLD_ANCHORED if has_style_anchor else CONSISTENCY_THRESHOLD_UNANCHORED
        ),
        "environment_completeness": COMPLETENESS_THRESHOLD,
    }


def build_scoring_prompt(scene_analysis: SceneAnalysis | None = None) -> str:
    specific = ""
    if scene_analysis is not None:
        people = " ".join(
            f"Is the {p.role} ({p.description}) at {p.position} drawn as illustration?"
            for p in scene_analysis.people
        )
        surfaces = " ".join(f"Is the {s} illustrated?" for s in scene_analysis.environment.surfaces)
        specific = f"\nSPECIFIC ELEMENTS TO CHECK:\nPeople: {people}\nSurfaces: {surfaces}\n"

    return (
        "Evaluate this image on three dimensions. Be extremely strict: the most common failure is converting "
        "only the main character while other people and the background stay photographic.\n"
        f"{specific}\n"
        "Rate each dimension from 1 to 10, where 10 is perfect:\n\n"
        "1. illustration_completeness: are ALL visible people drawn as illustrations with outlines and "
        "cel-shading? Score 3 or below if any person keeps photorealistic skin, hair or clothing. Score 5 if "
        "only the main character is illustrated.\n"
        "2. character_consistency: do all people look drawn by the same artist in the same style? Score 3 "
        "if one person is illustrated and another looks photographic.\n"
        "3. environment_completeness: is the ENTIRE background illustrated (sky or ceiling, walls and "
        "buildings, ground or floor)? Blurred or out-of-focus areas are almost always still photographs. "
        "Score 4 or below if any area shows photographic texture, camera noise, lens blur or bokeh.\n\n"
        "Reply with ONLY valid JSON, no explanation:\n"
        '{"illustration_completeness": N, "character_consistency": N, "environment_completeness": N}'
    )


def _coerce_score(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip():
        try:
            return int(float(value.strip()))
        except ValueError:
            return None
    return None


def parse_scores(text: str) -> dict[str, int] | None:
    raw = (text or "").strip()
    if not raw:
        return None
    payload: Any = None
    try:
        payload = json.loads(raw)
    except ValueError:
        start = raw.find("{")
        end = raw.rfind("}")
        if start != -1 and end > start:
            try:
                payload = json.loads(raw[start : end + 1])
            except ValueError:
                payload = None

    if isinstance(payload, dict):
        scores: dict[str, int] = {}
        for name in DIMENSIONS:
            score = _coerce_score(payload.get(name))
            if score is not None:
                scores[name] = score
        return scores

    nums = re.findall(r"\d+", raw)
    if len(nums) >= 3:
        return {name: int(n) for name, n in zip(DIMENSIONS, nums[:3])}
    return None


def evaluate_scores(scores: dict[str, int], has_style_anchor: bool) -> QualityAssessment:
    dimensions: list[DimensionScore] = []
    for name, threshold in thresholds_for(has_style_anchor).items():
        score = scores.get(name)
        if score is None:
            score = MISSING_SCORE
        dimensions.append(DimensionScore(name=name, score=score, threshold=threshold, passed=score >= threshold))
    failed = [d.name for d in dimensions if not d.passed]
    return QualityAssessment(passed=not failed, failed_dimensions=failed, dimensions=dimensions)


class QualityGate:
    """Scores a candidate with a fast auxiliary model. Any error lets the candidate through."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str | None,
        model: str,
        timeout_s: float = 15.0,
        client: Any | None = None,
    ) -> None:
        self._model = model
        self._timeout_s = float(timeout_s)
        if client is not None:
            self._client = client
            return

        import httpx

        kwargs: dict[str, Any] = {"api_key": api_key, "max_retries": 0}
        if base_url:
            kwargs["base_url"] = base_url
        kwargs["http_client"] = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout_s))
        self._client = AsyncOpenAI(**kwargs)

    async def _request_scores(self, candidate: ImagePart, scene_analysis: SceneAnalysis | None) -> str:
        response = await self._client.chat.completions.create(
            model=self._model,
            temperature=0.1,
            response_format={"type": "json_object"},
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": build_scoring_prompt(scene_analysis)},
                        {"type": "image_url", "image_url": {"url": candidate.to_data_url()}},
                    ],
                }
            ],
        )
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        return getattr(choices[0].message, "content", None) or ""

    async def assess(
        self,
        candidate: ImagePart,
        scene_analysis: SceneAnalysis | None,
        has_style_anchor: bool,
    ) -> QualityAssessment:
        try:
            text = await asyncio.wait_for(
                self._request_scores(candidate, scene_analysis),
                timeout=self._timeout_s,
            )
        except Exception as exc:
            logger.warning("quality.assess.fail_open model=%s error=%s", self._model, exc)
            return QualityAssessment(passed=True)

        scores = parse_scores(text)
        if scores is None:
            logger.warning("quality.assess.unparseable model=%s", self._model)
            return QualityAssessment(passed=True)

        result = evaluate_scores(scores, has_style_anchor)
        logger.info(
            "quality.assess.%s %s",
            "pass" if result.passed else "fail",
            " ".join(f"{d.name}={d.score}/{d.threshold}" for d in result.dimensions),
        )
        return result


def build_quality_gate() -> QualityGate | None:
    if not settings.quality_gate_configured:
        return None
    return QualityGate(
        api_key=settings.quality_api_key or "",
        base_url=settings.quality_base_url,
        model=settings.quality_model,
        timeout_s=settings.quality_timeout_s,
    )
