"""Builds the ordered instruction/image sequence for one conversion attempt.

Part order is fixed and some model behaviour depends on it:

    retry preamble -> identity lock -> style anchor -> scene elements
    -> strict rules -> style instruction -> source photo
"""
from __future__ import annotations

from typing import NamedTuple

from toon_engine.schemas.job import SceneAnalysis
from toon_engine.services.gemini.types import ImagePart, PromptPart, TextPart
from toon_engine.services.styles import resolve_style


BASE_TEMPERATURE = 0.5
ANCHORED_TEMPERATURE = 0.4
RETRY_TEMPERATURE = 0.8

IDENTITY_LOCK = (
    "[VISUAL IDENTITY LOCK]\n"
    "You are a professional Korean webtoon illustrator creating a BRAND NEW hand-drawn illustration.\n"
    "Redraw EVERY element as illustrated artwork: every person in the foreground and background, every "
    "object, and the whole environment including sky, ground, walls, streets, buildings, trees and furniture.\n"
    "No element may keep a photographic appearance. Every pixel of the output is drawn, with visible line "
    "art and cel-shading. This is a complete artistic recreation, not a photo edit.\n\n"
    "TWO FAILURES TO AVOID:\n"
    "1. PEOPLE: convert ALL people, not just one. If the scene has three people, all three become "
    "illustrations.\n"
    "2. ENVIRONMENT: redraw the ENTIRE background. Camera noise, lens blur, photographic lighting gradients "
    "and real-world textures must all be replaced by flat colour, drawn texture, line art or painted strokes."
)

STRICT_RULES = (
    "[STRICT RULES: VIOLATIONS FAIL THE QUALITY CHECK]\n"
    "- Nothing may look photorealistic: no surface, person or area.\n"
    "- Background people and bystanders need drawn outlines and cel-shading as well.\n"
    "- If the reference photo has N people, all N are converted.\n"
    "- Photographic skin texture on any person is a failure.\n"
    "- Sky, ground, walls, streets, buildings, furniture and trees are all redrawn.\n"
    "- Blurred or dark out-of-focus areas and bokeh are still photographs; repaint them.\n"
    "- No camera noise, lens flare or photographic lighting gradients.\n"
    "- Keep the exact composition, poses, expressions and number of people with correct anatomy.\n"
    "- Clean image: no text, speech bubbles or watermarks."
)

RETRY_PREAMBLES: tuple[str, ...] = (
    "[FAILED QUALITY CHECK: ATTEMPT 2]\n"
    "The previous output failed for two reasons.\n"
    "PEOPLE: the main character was converted but other people still look like real photographs.\n"
    "ENVIRONMENT: the background still looks photographic, with camera noise, blur or real textures.\n"
    "This attempt must fix both:\n"
    "1. Count every person in the reference photo and redraw each one with outlines and cel-shading.\n"
    "2. Redraw every surface with flat colour, line art or painted texture. No blurred photo backgrounds.\n"
    "3. Inspect the background before answering. Camera noise or lens blur means it is wrong.\n"
    "Start from scratch with zero photographic remnants.\n",
    "[SECOND FAILED QUALITY CHECK: FINAL ATTEMPT]\n"
    "People and/or environment are still photographic.\n"
    "Create a 100% hand-drawn illustration where every pixel is artwork.\n"
    "PEOPLE: thick visible outlines around EVERY person, main character and every bystander alike. "
    "Zero photographic skin, hair or clothing.\n"
    "ENVIRONMENT: fill EVERY surface with flat illustrated colour and drawn texture. Dark or blurry areas "
    "are repainted too; a darkened photo background is not an illustrated background.\n"
    "Redraw the ENTIRE scene from scratch as a manhwa illustration.\n",
)

STYLE_ANCHOR_LABEL = "\n[STYLE ANCHOR: match this exact art style, line weight, colour palette and shading]:"
COMPOSITION_LABEL = "\n[COMPOSITION REFERENCE: redraw this ENTIRE scene from scratch as illustration]:"


class PromptBuild(NamedTuple):
    parts: list[PromptPart]
    temperature: float


def retry_preamble(retry_level: int) -> str | None:
    if retry_level <= 0:
        return None
    return RETRY_PREAMBLES[min(retry_level - 1, len(RETRY_PREAMBLES) - 1)]


def format_scene_analysis(analysis: SceneAnalysis) -> str:
    lines = ["[SCENE ELEMENTS TO REDRAW: do NOT skip any of these]"]

    if analysis.people:
        lines.append(f"\nPEOPLE ({len(analysis.people)} total, ALL must be redrawn as illustrations):")
        for person in analysis.people:
            label = "MAIN CHARACTER" if person.role == "main" else "BYSTANDER"
            lines.append(f"  - [{label}] {person.description} (position: {person.position})")

    env = analysis.environment
    if env.surfaces:
        lines.append("\nENVIRONMENT (ALL surfaces must be redrawn):")
        lines.append(f"  Description: {env.description}")
        lines.append(f"  Lighting: {env.lighting}")
        lines.append("  Surfaces to redraw:")
        for surface in env.surfaces:
            lines.append(f"    - {surface}")

    if analysis.color_palette:
        lines.append(
            "\nDOMINANT COLORS (keep these in illustrated form): " + ", ".join(analysis.color_palette)
        )

    return "\n".join(lines)


def build_prompt_parts(
    source: ImagePart,
    style_id: str,
    *,
    scene_analysis: SceneAnalysis | None = None,
    style_anchor: ImagePart | None = None,
    retry_level: int = 0,
) -> PromptBuild:
    parts: list[PromptPart] = []

    preamble = retry_preamble(retry_level)
    if preamble:
        parts.append(TextPart(preamble))

    parts.append(TextPart(IDENTITY_LOCK))

    if style_anchor is not None:
        parts.append(TextPart(STYLE_ANCHOR_LABEL))
        parts.append(style_anchor)

    if scene_analysis is not None and scene_analysis.people:
        parts.append(TextPart("\n" + format_scene_analysis(scene_analysis)))

    parts.append(TextPart("\n" + STRICT_RULES))
    parts.append(TextPart("\n" + resolve_style(style_id).instruction))

    parts.append(TextPart(COMPOSITION_LABEL))
    parts.append(source)

    temperature = BASE_TEMPERATURE
    if style_anchor is not None:
        temperature = ANCHORED_TEMPERATURE
    if retry_level > 0:
        temperature = RETRY_TEMPERATURE

    return PromptBuild(parts=parts, temperature=temperature)
