from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class StyleOption:
    id: str
    name: str
    description: str
    instruction: str


STYLE_OPTIONS: tuple[StyleOption, ...] = (
    StyleOption(
        id="watercolor",
        name="Warm Watercolor",
        description="Soft palette and a warm, hand-painted mood",
        instruction=(
            "[STYLE: WARM WATERCOLOR]\n"
            "Paint a warm, hand-painted anime illustration with the feel of a classic Ghibli frame.\n"
            "Use soft pencil outlines of varying thickness and fill every surface (people, objects, sky, "
            "ground, walls, every background element) with watercolor washes in warm pastels: peach skin, "
            "soft greens, sky blues and golden light. Apply soft-edged two-tone cel-shading throughout.\n"
            "EVERY PERSON in the scene, foreground or background, must be redrawn with pencil outlines and "
            "watercolor skin, hair and clothing. No person may keep a photographic look.\n"
            "ENVIRONMENT: repaint the whole background as a watercolor landscape with painted sky and "
            "washed ground, walls and buildings. Out-of-focus areas become soft washes, never camera blur.\n"
            "REMINDER: a blurry photograph is not watercolor. Every surface shows paint or pencil texture."
        ),
    ),
    StyleOption(
        id="cinematic-noir",
        name="Cinematic Noir",
        description="Heavy ink and deep shadow",
        instruction=(
            "[STYLE: CINEMATIC NOIR]\n"
            "Draw a dark crime-thriller manhwa panel.\n"
            "WARNING: dark photos look finished but are NOT illustrated. Redraw everything from scratch no "
            "matter how moody the source already is.\n"
            "Use heavy bold ink strokes and aggressive hatching in blacks, dark greys and muted blues with "
            "rare blood-red accents. Redraw every wall, street, floor and sky as dark atmospheric "
            "illustration with grain and urban texture, with roughly seventy percent of the frame in shadow.\n"
            "EVERY PERSON in the scene gets sharp angular illustrated features with bold ink outlines and "
            "hatching. If there are five people, all five are redrawn as ink illustration.\n"
            "REMINDER: a dark photograph is not a dark illustration. No photographic skin, fabric or walls."
        ),
    ),
    StyleOption(
        id="dark-fantasy",
        name="Dark Fantasy Webtoon",
        description="High contrast with glowing effects",
        instruction=(
            "[STYLE: DARK FANTASY MANHWA]\n"
            "Draw a high-action fantasy manhwa panel.\n"
            "WARNING: dark photos look finished but are NOT illustrated. Redraw everything from scratch.\n"
            "Use razor-sharp digital inking with bold outlines for every person and object and thinner lines "
            "for energy effects. Colour the whole scene in deep tones with neon accents in electric blue, "
            "purple and cyan, with subtle magical particles in a fully illustrated background. Apply "
            "multi-layer cel-shading with sharp transitions and rim lighting on every surface.\n"
            "EVERY PERSON in the scene gets bold digital outlines, cel-shading and fantasy-style features.\n"
            "REMINDER: every skin surface shows cel-shading, every fabric shows drawn folds, every wall, "
            "floor and sky shows illustrated texture."
        ),
    ),
    StyleOption(
        id="elegant-fantasy",
        name="Elegant Fantasy",
        description="Refined romance-fantasy painting",
        instruction=(
            "[STYLE: ELEGANT ROMANCE FANTASY]\n"
            "Draw a luxury romance-fantasy webtoon panel.\n"
            "Use delicate thin lines in warm sepia with flowing curves. Colour the scene in rose pink, "
            "champagne gold, lavender and pearl white. Hair becomes silky strands with sparkle highlights; "
            "eyes become jewels with layered highlights.\n"
            "EVERY PERSON in the scene is redrawn with delicate line art and soft illustrated colouring.\n"
            "ENVIRONMENT: the whole background becomes an illustrated scene with petals, golden sparkles, "
            "palace architecture or painted landscape. No photographic texture or camera blur remains.\n"
            "REMINDER: soft-focus photography is not soft illustration."
        ),
    ),
    StyleOption(
        id="classic-webtoon",
        name="Classic Webtoon",
        description="The traditional Korean webtoon look",
        instruction=(
            "[STYLE: CLASSIC KOREAN WEBTOON]\n"
            "Draw a clean modern Korean webtoon panel.\n"
            "Put uniform-weight black outlines around every element and fill everything with flat colour and "
            "crisp two-tone cel-shading. Simplify the background into clean shapes with flat colour and "
            "optional screen-tone.\n"
            "EVERY PERSON in the scene gets clean black outlines, flat-coloured skin and the typical webtoon "
            "face with slightly large eyes.\n"
            "ENVIRONMENT: redraw every wall, floor, sky, street, building and piece of furniture with clean "
            "outlines and flat or screen-tone fills. Even empty backgrounds use flat illustrated colour.\n"
            "REMINDER: a desaturated photograph is not a webtoon background."
        ),
    ),
)

DEFAULT_STYLE_ID = "classic-webtoon"

_BY_ID = {style.id: style for style in STYLE_OPTIONS}


def get_style(style_id: str | None) -> StyleOption | None:
    return _BY_ID.get((style_id or "").strip())


def resolve_style(style_id: str | None) -> StyleOption:
    return get_style(style_id) or _BY_ID[DEFAULT_STYLE_ID]
