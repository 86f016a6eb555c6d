"""Prompt templates and builders for the Gemini try-on stages."""

from dataclasses import dataclass
from typing import Optional

from services.errors import ValidationError


# --- DETECTION PROMPT ---

DETECTION_PROMPT_TEMPLATE = """Analyze this image and detect clothing items. Please provide a detailed analysis in JSON format with the following structure:

{{
  "items": [
    {{
      "category": "tops|bottoms|dresses|shoes|accessories",
      "type": "specific item type (e.g., t-shirt, jeans, sneakers)",
      "color": "primary color",
      "style": "style description",
      "confidence": 0.0-1.0,
      "boundingBox": {{"x": 0, "y": 0, "width": 0, "height": 0}},
      "features": ["list", "of", "notable", "features"]
    }}
  ],
  "background": "background description",
  "lighting": "lighting conditions",
  "quality": "image quality assessment"
}}

Focus on identifying wearable clothing items that could be virtually tried on.
{CATEGORY_HINT}Image source: {SOURCE}
Provide accurate bounding boxes for each detected item and assess the suitability for virtual try-on.
Return ONLY the JSON object, no other text."""


# --- GENERATION PROMPT ---

TRYON_PROMPT_TEMPLATE = """Generate ONE photorealistic image of the person in the first image wearing the {CATEGORY} shown in the second image.

Requirements:
1. Preserve the person's face, identity, skin tone, hair and body proportions exactly.
2. Apply the garment naturally to the person's body, replacing any existing clothing of the same type.
3. Keep the original pose, camera framing and background unchanged.
4. Render realistic fabric draping, folds, shadows and texture.
5. Match lighting: {LIGHTING_DESCRIPTION}.
6. Style: {STYLE_DESCRIPTION}.
{EXTRA_REQUIREMENTS}
Avoid distortions, extra limbs, text or watermarks drawn into the image.
Return the final composite image, followed by one short sentence describing the fit."""


# --- ANALYSIS PROMPT ---

ANALYSIS_PROMPT = """You are reviewing a virtual try-on result image. Assess how well the garment fits the person and how realistic the composite looks.

Return ONLY a JSON object with this structure:
{
  "fit_analysis": {"size_compatibility": "...", "body_type_match": "...", "pose_compatibility": "..."},
  "visual_result": {"realism": "...", "lighting_match": "...", "fabric_draping": "..."},
  "styling_assessment": {"color_harmony": "...", "style_match": "...", "occasion": "..."},
  "recommendations": ["short styling or sizing recommendation", "..."],
  "confidence_score": 0.0-1.0,
  "safety_assessment": "appropriate|needs_review",
  "description": "one or two sentences describing the result"
}

Rules:
- confidence_score is your confidence that the composite is an accurate try-on.
- Use "needs_review" if anything in the image may be inappropriate.
- Respond with raw JSON only (no markdown, comments or surrounding text)."""


# --- REFINEMENT PROMPT ---

REFINE_PROMPT_TEMPLATE = """Edit this virtual try-on image according to the instruction below.

Instruction: {INSTRUCTION}

Keep the person's identity, face, pose and background unchanged. Only apply the requested change, keeping the garment realistic and consistent with the rest of the image.
Return the edited image."""


# --- SAFETY PROMPT ---

SAFETY_PROMPT_TEMPLATE = """Assess whether this {SUBJECT} image is appropriate to use in a clothing virtual try-on service.

Check for nudity or sexual content, minors, violence, hateful symbols, or anything that should not be edited into a fashion photo.

Return ONLY a JSON object:
{{
  "safe": true/false,
  "concerns": ["short description of each concern"],
  "recommendation": "proceed|review|reject"
}}

Use "reject" only for content that must never be processed; use "review" when uncertain."""


CONNECTION_TEST_PROMPT = "Hello, can you confirm this API connection is working?"


@dataclass(frozen=True)
class PromptDefaults:
    """Default wording folded into the generation prompt."""

    category: str = "clothing"
    lighting_auto: str = (
        "keep the original photo's lighting direction and colour temperature"
    )
    style_natural: str = (
        "a clean, natural photographic look matching the original photo"
    )
    preserve_features: str = (
        "Do not alter the person's appearance except for the clothing."
    )
    high_quality: str = (
        "Generate a high-resolution, finely detailed result with sharp focus."
    )
    character_consistency: str = (
        "Keep the person's identity perfectly consistent with the first image."
    )
    multi_image_fusion: str = (
        "Blend both input images into a single coherent photograph."
    )


DEFAULTS = PromptDefaults()


def build_detection_prompt(category: Optional[str] = None, source: Optional[str] = None) -> str:
    category_hint = ""
    if category and category not in ("auto", "clothing"):
        category_hint = f"Prioritize detecting {category}.\n"
    return DETECTION_PROMPT_TEMPLATE.format(
        CATEGORY_HINT=category_hint,
        SOURCE=source or "unknown",
    )


def build_tryon_prompt(
    category: Optional[str] = None,
    *,
    preserve_features: bool = True,
    high_quality: bool = False,
    style: str = "natural",
    lighting: str = "auto",
    character_consistency: bool = False,
    multi_image_fusion: bool = False,
) -> str:
    """Render the generation prompt with request options folded in."""
    extras = []
    if preserve_features:
        extras.append(DEFAULTS.preserve_features)
    if high_quality:
        extras.append(DEFAULTS.high_quality)
    if character_consistency:
        extras.append(DEFAULTS.character_consistency)
    if multi_image_fusion:
        extras.append(DEFAULTS.multi_image_fusion)

    numbered = [f"{index}. {text}" for index, text in enumerate(extras, start=7)]

    style_description = (
        DEFAULTS.style_natural
        if not style or style == "natural"
        else f"a {style} look, still photorealistic"
    )
    lighting_description = (
        DEFAULTS.lighting_auto
        if not lighting or lighting == "auto"
        else f"{lighting} lighting, consistent across person and garment"
    )

    return TRYON_PROMPT_TEMPLATE.format(
        CATEGORY=category or DEFAULTS.category,
        LIGHTING_DESCRIPTION=lighting_description,
        STYLE_DESCRIPTION=style_description,
        EXTRA_REQUIREMENTS="\n".join(numbered) + ("\n" if numbered else ""),
    )


def build_analysis_prompt() -> str:
    return ANALYSIS_PROMPT


def build_refine_prompt(instruction: str) -> str:
    cleaned = " ".join((instruction or "").split())
    if not cleaned:
        raise ValidationError("Refinement instruction must not be empty")
    return REFINE_PROMPT_TEMPLATE.format(INSTRUCTION=cleaned)


def build_safety_prompt(subject: str = "image") -> str:
    return SAFETY_PROMPT_TEMPLATE.format(SUBJECT=subject)
