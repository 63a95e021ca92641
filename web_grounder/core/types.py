import math
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple, TypedDict

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ElementSource(str, Enum):
    DOM_DATABASE = "dom_database"
    ACCESSIBILITY_TREE = "accessibility_tree"
    GENERATED_CODE = "generated_code"


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


class BoundingRect(_Model):
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0

    @property
    def is_markable(self) -> bool:
        return self.width > 0 and self.height > 0


class ElementDescriptor(_Model):
    """One page element, keyed by its selector across every source."""

    selector: str = Field(..., min_length=1)
    role: Optional[str] = None
    name: str = ""
    bounding_rect: Optional[BoundingRect] = Field(None, alias="boundingRect")
    source: ElementSource
    a11y_enriched: bool = Field(False, alias="a11yEnriched")

    @field_validator("name", mode="before")
    @classmethod
    def _coerce_name(cls, v: Any) -> str:
        return _as_text(v)

    @property
    def is_markable(self) -> bool:
        return self.bounding_rect is not None and self.bounding_rect.is_markable


class AXNode(_Model):
    """Processed accessibility-tree node. `selector` is filled by DOM mapping."""

    selector: Optional[str] = None
    role: str = ""
    name: str = ""
    description: str = ""
    value: str = ""
    bounding_rect: Optional[BoundingRect] = Field(None, alias="boundingRect")
    properties: Dict[str, Any] = Field(default_factory=dict)
    node_id: Optional[str] = Field(None, alias="nodeId")
    backend_node_id: Optional[int] = Field(None, alias="backendDOMNodeId")

    @field_validator("role", "name", "description", "value", mode="before")
    @classmethod
    def _coerce_text(cls, v: Any) -> str:
        return _as_text(v)


class Mark(NamedTuple):
    ordinal: int
    descriptor: ElementDescriptor


class GroundingContext(_Model):
    """Inbound context. Every field is optional; sources stay loosely typed
    here and are mapped into ElementDescriptor at ingestion."""

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    tab_id: Optional[Any] = Field(None, alias="tabId")
    dom_elements: Optional[List[Any]] = Field(None, alias="domElements")
    generated_code: Optional[Any] = Field(None, alias="generatedCode")
    screenshot: Optional[Any] = None


class Candidate(_Model):
    mark_number: Optional[int] = Field(None, alias="markNumber")
    selector: Optional[str] = None
    reasoning: str = ""

    @field_validator("mark_number", mode="before")
    @classmethod
    def _coerce_mark_number(cls, v: Any) -> Optional[int]:
        # Models often echo the "[n]" notation; anything unparseable becomes an unknown mark.
        if isinstance(v, bool):
            return None
        if isinstance(v, int):
            return v
        if isinstance(v, float):
            return int(v) if v.is_integer() else None
        if isinstance(v, str):
            try:
                return int(v.strip().strip("[]").strip())
            except ValueError:
                return None
        return None

    @field_validator("reasoning", mode="before")
    @classmethod
    def _coerce_reasoning(cls, v: Any) -> str:
        return _as_text(v)


class GroundingReply(_Model):
    """JSON shape the reasoning service is asked to return."""

    interpretation: str = ""
    confidence: float = 0.0
    candidates: List[Candidate] = Field(default_factory=list)
    needs_disambiguation: bool = Field(False, alias="needsDisambiguation")

    @field_validator("interpretation", mode="before")
    @classmethod
    def _coerce_interpretation(cls, v: Any) -> str:
        return _as_text(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _default_confidence(cls, v: Any) -> Any:
        return 0.0 if v is None else v

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, v: float) -> float:
        if math.isnan(v):
            return 0.0
        return max(0.0, min(1.0, v))

    @field_validator("candidates", mode="before")
    @classmethod
    def _default_candidates(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("needs_disambiguation", mode="before")
    @classmethod
    def _default_flag(cls, v: Any) -> Any:
        return False if v is None else v


class SelectedElement(ElementDescriptor):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    mark_number: int = Field(..., alias="markNumber")
    reasoning: str = ""
    matched_by: str = Field("som", alias="matchedBy")


class Prompt(_Model):
    text: str
    image: Optional[str] = None
    has_image: bool = Field(False, alias="hasImage")


class GroundingResult(_Model):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    success: bool = True
    error: Optional[str] = None
    interpretation: str = ""
    confidence: float = 0.0
    selected_elements: Tuple[SelectedElement, ...] = Field(
        default_factory=tuple, alias="selectedElements")
    needs_disambiguation: bool = Field(True, alias="needsDisambiguation")
    reasoning: str = ""
    unresolved_marks: Tuple[Optional[int], ...] = Field(default_factory=tuple, alias="unresolvedMarks")
    parse_error: Optional[str] = Field(None, alias="parseError")

    @classmethod
    def failure(cls, message: str) -> "GroundingResult":
        return cls(success=False, error=message, confidence=0.0, needs_disambiguation=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ReasoningRequest(TypedDict):
    prompt: str
    screenshot: Optional[str]
    hasScreenshot: bool


class ReasoningResponse(TypedDict, total=False):
    success: bool
    result: Any
    error: str


class GroundingState(TypedDict, total=False):
    query: str
    context: GroundingContext
    elements: List[ElementDescriptor]
    overlay: Any
    marks: List[Mark]
    prompt: Prompt
    reply: Any
    result: GroundingResult
    error: Optional[str]
