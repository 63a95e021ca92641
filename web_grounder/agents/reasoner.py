from typing import Any, Dict, List, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from ..core.config import GROUNDING_MODEL, GROUNDING_TIMEOUT
from ..core.types import ReasoningRequest, ReasoningResponse

SYSTEM_PROMPT = (
    "You are **Grounder**, a visual grounding agent for a web page editor.\n"
    "\n"
    "You receive a user's editing request, a numbered list of page elements and, when available, "
    "a screenshot where the same numbers are drawn as [n] labels on orange boxes.\n"
    "\n"
    "Your ONLY job is to decide WHICH element(s) the request refers to. You do not decide what change to make.\n"
    "\n"
    "RULES\n"
    "- Refer to elements only by their [number]. Never invent numbers that are not in the list.\n"
    "- Prefer the element whose role, label and position best match the request.\n"
    "- Be honest about uncertainty: if several elements fit, list them all and lower your confidence.\n"
    "- Respond with a single JSON object and nothing else.\n"
)


def flatten_content(content: Any) -> str:
    """Flatten OpenAI-style mixed content into a single string."""
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
            elif isinstance(block, str):
                parts.append(block)
        return "\n".join(parts).strip()
    return str(content)


def _as_image_url(screenshot: str) -> str:
    if screenshot.startswith("data:"):
        return screenshot
    return f"data:image/png;base64,{screenshot}"


class VisionReasoner:
    """
    Reasoning-service boundary backed by a vision chat model.

    Called with ``{prompt, screenshot, hasScreenshot}`` and returns
    ``{success, result}`` or ``{success: False, error}``. The raw reply text is
    returned untouched; interpretation happens in ``set_of_marks.interpret``.
    Any chat model with ``invoke(messages)`` can be passed as ``llm``.
    """

    def __init__(
        self,
        llm=None,
        model: str = GROUNDING_MODEL,
        temperature: float = 0.0,
        timeout: float = GROUNDING_TIMEOUT,
        max_retries: int = 1,
    ):
        self._llm = llm
        self.model = model
        self.temperature = temperature
        self.timeout = timeout
        self.max_retries = max_retries

    @property
    def llm(self):
        # Built lazily so constructing a grounder never needs credentials.
        if self._llm is None:
            self._llm = ChatOpenAI(
                model=self.model,
                temperature=self.temperature,
                timeout=self.timeout,
                max_retries=self.max_retries,
            )
        return self._llm

    def build_messages(self, request: ReasoningRequest) -> List[Any]:
        prompt = request.get("prompt") or ""
        screenshot: Optional[str] = request.get("screenshot")

        human_content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        if request.get("hasScreenshot") and screenshot:
            human_content.append({"type": "image_url", "image_url": {"url": _as_image_url(screenshot)}})

        return [SystemMessage(content=SYSTEM_PROMPT), HumanMessage(content=human_content)]

    def __call__(self, request: ReasoningRequest) -> ReasoningResponse:
        messages = self.build_messages(request)
        has_image = len(messages[1].content) > 1
        print(
            f"[Reasoner] Calling grounding model (prompt={len(request.get('prompt') or '')} chars, "
            f"screenshot={has_image})..."
        )
        try:
            result = self.llm.invoke(messages)
        except Exception as e:
            print(f"[Reasoner] Model call failed: {e}")
            return {"success": False, "error": f"AI grounding call failed: {e}"}

        return {"success": True, "result": flatten_content(result.content)}
