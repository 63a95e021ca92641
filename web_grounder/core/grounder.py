from pathlib import Path
from typing import Any, Optional, Union

from .config import GROUNDING_MAX_IMAGE_SIZE, GroundingConfig
from .dataset import save_artifacts
from .errors import GroundingError
from .graph import build_graph
from .types import GroundingContext, GroundingResult, GroundingState
from ..agents.reasoner import VisionReasoner
from ..agents.set_of_marks import build_prompt, interpret
from ..dom.accessibility import AccessibilityTreeExtractor
from ..dom.fusion import ElementFusion
from ..utils.imaging import image_to_data_url, render_overlay

NO_ELEMENTS_ERROR = "No elements found on page"


class IntentGrounder:
    """
    Maps a natural-language editing request to concrete page elements.

    Two stages: fuse every available element source into one numbered
    candidate list, then ask a vision model (optionally with a Set-of-Mark
    screenshot) which numbers the request refers to. Each call is
    self-contained; nothing about the page is cached between calls here.
    """

    def __init__(
        self,
        reasoner=None,
        fusion: Optional[ElementFusion] = None,
        ax_extractor=None,
        config: Optional[GroundingConfig] = None,
        artifacts_dir: Optional[Union[str, Path]] = None,
    ):
        if fusion is None:
            fusion = ElementFusion(ax_extractor if ax_extractor is not None else AccessibilityTreeExtractor())
        self.fusion = fusion
        self.ax_extractor = fusion.ax_extractor
        self.reasoner = reasoner if reasoner is not None else VisionReasoner()
        self.config = config or GroundingConfig.from_env()
        self.artifacts_dir = Path(artifacts_dir) if artifacts_dir else None
        self._app = build_graph(self)

    # --- Pipeline stages ---

    def gather_elements(self, state: GroundingState) -> GroundingState:
        elements = self.fusion.gather(state["context"])
        print(f"[Grounder] Gathered {len(elements)} total elements")
        state["elements"] = elements
        if not elements:
            state["error"] = NO_ELEMENTS_ERROR
        return state

    def render_marks(self, state: GroundingState) -> GroundingState:
        context = state["context"]
        state["overlay"] = None
        state["marks"] = []
        if self.config.use_visual_grounding and context.screenshot:
            overlay, marks = render_overlay(context.screenshot, state["elements"])
            state["overlay"] = overlay
            state["marks"] = marks
        return state

    def dispatch(self, state: GroundingState) -> GroundingState:
        context = state["context"]
        overlay = state.get("overlay")
        overlay_url = image_to_data_url(overlay, max_size=GROUNDING_MAX_IMAGE_SIZE) if overlay is not None else None

        prompt = build_prompt(
            state["query"],
            state["elements"],
            overlay_url,
            threshold=self.config.confidence_threshold,
            refinement=bool(context.generated_code),
        )
        state["prompt"] = prompt
        print(f"[Grounder] Prompt length: {len(prompt.text)} chars, has screenshot: {prompt.has_image}")

        response = self.reasoner(
            {"prompt": prompt.text, "screenshot": prompt.image, "hasScreenshot": prompt.has_image}
        )
        if not response or not response.get("success"):
            raise GroundingError((response or {}).get("error") or "AI grounding call failed")

        state["reply"] = response.get("result")
        return state

    def interpret_reply(self, state: GroundingState) -> GroundingState:
        state["result"] = interpret(
            state.get("reply"), state["elements"], threshold=self.config.confidence_threshold
        )
        return state

    # --- Public API ---

    def ground_intent(self, query: str, context: Any = None) -> GroundingResult:
        print(f'[Grounder] Grounding query: "{query}"')
        try:
            if not isinstance(context, GroundingContext):
                context = GroundingContext.model_validate(context or {})
            final = self._app.invoke({"query": query, "context": context})
        except Exception as e:
            print(f"[Grounder] Error grounding intent: {e}")
            return GroundingResult.failure(str(e) or e.__class__.__name__)

        if final.get("error"):
            print(f"[Grounder] {final['error']}")
            return GroundingResult.failure(final["error"])

        result = final.get("result")
        if result is None:
            return GroundingResult.failure("Grounding pipeline produced no result")

        print(
            f"[Grounder] Grounding complete: interpretation='{result.interpretation}' "
            f"confidence={result.confidence:.2f} candidates={len(result.selected_elements)} "
            f"needs_disambiguation={result.needs_disambiguation}"
        )
        if self.artifacts_dir is not None:
            save_artifacts(query, result, final.get("overlay"), self.artifacts_dir)
        return result

    def set_confidence_threshold(self, threshold: float) -> None:
        self.config.confidence_threshold = max(0.0, min(1.0, float(threshold)))
        print(f"[Grounder] Confidence threshold set to {self.config.confidence_threshold}")

    def set_visual_grounding(self, enabled: bool) -> None:
        self.config.use_visual_grounding = bool(enabled)

    def clear_cache(self, tab_id: Any = None) -> None:
        """Drop memoised accessibility trees (call when the page changes)."""
        if self.ax_extractor is not None:
            self.ax_extractor.clear_cache(tab_id)
