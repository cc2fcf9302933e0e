"""Generation request validation, credit pricing and prompt enhancement."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


PROMPT_MAX_LENGTH = 1800
MAX_TRIGGERS = 3
SUPPORTED_DURATIONS = (5, 8)
SUPPORTED_QUALITIES = ("720p", "1080p")
SUPPORTED_ASPECT_RATIOS = ("16:9", "4:3", "1:1", "3:4", "9:16")

COST_TABLE: Dict[Tuple[int, str], int] = {
    (5, "720p"): 20,
    (5, "1080p"): 25,
    (8, "720p"): 30,
}

TRIGGER_DESCRIPTIONS: Dict[str, str] = {
    "soap": "soap cutting and squishing sounds",
    "sponge": "sponge squeezing and soft textures",
    "ice": "ice cracking and melting sounds",
    "water": "gentle water flowing and dripping",
    "honey": "viscous honey pouring and dripping",
    "cubes": "satisfying cube cutting and arrangements",
    "petals": "soft flower petals and gentle touches",
    "pages": "paper rustling and page turning sounds",
}

PROMPT_SUFFIX = (
    ". High quality, smooth camera movement, relaxing atmosphere, "
    "4K resolution, soft lighting, calming ambiance."
)


class InvalidParametersError(ValueError):
    """Raised when a generation request carries unsupported values."""


class InvalidCombinationError(ValueError):
    """Raised when a duration/quality pair has no price in the cost table."""

    def __init__(self, duration: int, quality: str) -> None:
        self.duration = duration
        self.quality = quality
        super().__init__(f"{duration}-second videos are not offered in {quality}")


@dataclass(frozen=True)
class GenerationParams:
    prompt: str
    triggers: List[str] = field(default_factory=list)
    duration: int = 5
    quality: str = "720p"
    aspect_ratio: str = "16:9"
    image_url: Optional[str] = None

    def as_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "prompt": self.prompt,
            "triggers": list(self.triggers),
            "duration": self.duration,
            "quality": self.quality,
            "aspect_ratio": self.aspect_ratio,
        }
        if self.image_url:
            record["image_url"] = self.image_url
        return record


def calculate_credit_cost(duration: int, quality: str) -> int:
    cost = COST_TABLE.get((duration, quality))
    if cost is None:
        raise InvalidCombinationError(duration, quality)
    return cost


def validate_generation_params(
    *,
    prompt: Any,
    triggers: Any = None,
    duration: Any = 5,
    quality: Any = "720p",
    aspect_ratio: Any = "16:9",
    image_url: Any = None,
) -> GenerationParams:
    """Validate raw inputs and return normalized params.

    Raises ``InvalidParametersError`` for unsupported values and
    ``InvalidCombinationError`` when the pair is valid on its own but not priced.
    """

    if not isinstance(prompt, str) or not prompt.strip():
        raise InvalidParametersError("prompt is required")
    normalized_prompt = prompt.strip()
    if len(normalized_prompt) > PROMPT_MAX_LENGTH:
        raise InvalidParametersError(f"prompt cannot exceed {PROMPT_MAX_LENGTH} characters")

    if isinstance(duration, bool) or duration not in SUPPORTED_DURATIONS:
        raise InvalidParametersError("duration must be 5 or 8")
    if quality not in SUPPORTED_QUALITIES:
        raise InvalidParametersError("quality must be 720p or 1080p")
    if aspect_ratio not in SUPPORTED_ASPECT_RATIOS:
        raise InvalidParametersError(
            "aspect_ratio must be one of: " + ", ".join(SUPPORTED_ASPECT_RATIOS)
        )

    if triggers is not None and not isinstance(triggers, (list, tuple)):
        raise InvalidParametersError("triggers must be a list")
    normalized_triggers: List[str] = []
    for trigger in triggers or []:
        if not isinstance(trigger, str) or trigger not in TRIGGER_DESCRIPTIONS:
            raise InvalidParametersError(f"unknown trigger: {trigger}")
        if trigger not in normalized_triggers:
            normalized_triggers.append(trigger)
    if len(normalized_triggers) > MAX_TRIGGERS:
        raise InvalidParametersError(f"at most {MAX_TRIGGERS} triggers are allowed")

    if image_url is not None and (not isinstance(image_url, str) or not image_url.startswith(("http://", "https://"))):
        raise InvalidParametersError("image_url must be an http(s) URL")

    calculate_credit_cost(int(duration), str(quality))

    return GenerationParams(
        prompt=normalized_prompt,
        triggers=normalized_triggers,
        duration=int(duration),
        quality=str(quality),
        aspect_ratio=str(aspect_ratio),
        image_url=image_url,
    )


def build_generation_prompt(params: GenerationParams) -> str:
    prompt = f"ASMR video: {params.prompt}"
    descriptions = [TRIGGER_DESCRIPTIONS[trigger] for trigger in params.triggers if trigger in TRIGGER_DESCRIPTIONS]
    if descriptions:
        prompt += ", featuring " + ", ".join(descriptions)
    return prompt + PROMPT_SUFFIX
