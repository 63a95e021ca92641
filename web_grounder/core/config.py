import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# Reasoning service
GROUNDING_MODEL = os.getenv("GROUNDING_MODEL", "gpt-4o-mini")
GROUNDING_TIMEOUT = float(os.getenv("GROUNDING_TIMEOUT", "45"))
GROUNDING_MAX_IMAGE_SIZE = int(os.getenv("GROUNDING_MAX_IMAGE_SIZE", "1280"))

# Confidence policy
CONFIDENCE_THRESHOLD = float(os.getenv("GROUNDING_CONFIDENCE_THRESHOLD", "0.8"))
MULTI_CANDIDATE_THRESHOLD = 0.9
USE_VISUAL_GROUNDING = _env_bool("GROUNDING_VISUAL", True)

# Accessibility tree memo (seconds)
A11Y_CACHE_TIMEOUT = float(os.getenv("A11Y_CACHE_TIMEOUT", "5"))

# Debug artifacts
OUT_DIR = Path(os.getenv("GROUNDING_OUT_DIR", "artifacts/grounding/"))

GENERIC_ROLE = "element"

# Element filtering
CLICKABLE_ROLES = [
    "button",
    "link",
    "checkbox",
    "radio",
    "switch",
    "menuitem",
    "tab",
    "textbox",
    "combobox",
]

# Roles kept from the accessibility tree (interactive + landmarks)
INTERACTIVE_ROLES = {
    "button", "link", "textbox", "combobox", "listbox", "menuitem",
    "tab", "checkbox", "radio", "switch", "slider", "searchbox",
    "img", "heading", "navigation", "main", "form", "article",
    "banner", "region", "complementary", "contentinfo",
}


@dataclass
class GroundingConfig:
    """Per-grounder policy. Not safe to mutate while a call is in flight."""

    confidence_threshold: float = CONFIDENCE_THRESHOLD
    use_visual_grounding: bool = USE_VISUAL_GROUNDING

    @classmethod
    def from_env(cls) -> "GroundingConfig":
        return cls(
            confidence_threshold=float(
                os.getenv("GROUNDING_CONFIDENCE_THRESHOLD", str(CONFIDENCE_THRESHOLD))),
            use_visual_grounding=_env_bool("GROUNDING_VISUAL", USE_VISUAL_GROUNDING),
        )
