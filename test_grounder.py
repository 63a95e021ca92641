import base64
import io
import json

from PIL import Image
from pydantic import ValidationError

from web_grounder.core.config import GroundingConfig
from web_grounder.core.errors import AccessibilityExtractionError
from web_grounder.core.grounder import IntentGrounder
from web_grounder.core.types import AXNode

FUSED_CONTEXT = {"domElements": [{"selector": "#hero"}, {"selector": ".cta"}]}

CTA_REPLY = {
    "interpretation": "resize CTA button",
    "confidence": 0.92,
    "candidates": [{"markNumber": 2, "selector": ".cta", "reasoning": "labelled button"}],
    "needsDisambiguation": False,
}


class StubReasoner:
    def __init__(self, reply=None, response=None, error=None):
        self.reply = CTA_REPLY if reply is None else reply
        self.response = response
        self.error = error
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if self.error:
            raise self.error
        if self.response is not None:
            return self.response
        text = self.reply if isinstance(self.reply, str) else json.dumps(self.reply)
        return {"success": True, "result": text}


class FakeExtractor:
    def __init__(self, nodes=None, error=None):
        self.nodes = nodes or []
        self.error = error
        self.cleared = []

    def extract_accessibility_tree(self, tab_id):
        if self.error:
            raise self.error
        return list(self.nodes)

    def clear_cache(self, tab_id=None):
        self.cleared.append(tab_id)


def _screenshot():
    buf = io.BytesIO()
    Image.new("RGB", (200, 120), "white").save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("utf-8")


def _grounder(reasoner=None, **kwargs):
    kwargs.setdefault("ax_extractor", FakeExtractor())
    kwargs.setdefault("config", GroundingConfig(confidence_threshold=0.8, use_visual_grounding=True))
    return IntentGrounder(reasoner=reasoner or StubReasoner(), **kwargs)


def test_confident_reply_selects_cta():
    reasoner = StubReasoner()
    result = _grounder(reasoner).ground_intent("make the button bigger", FUSED_CONTEXT)

    assert result.success
    assert [e.selector for e in result.selected_elements] == [".cta"]
    assert result.confidence == 0.92
    assert result.needs_disambiguation is False
    assert '"make the button bigger"' in reasoner.requests[0]["prompt"]
    assert "[2] element (.cta)" in reasoner.requests[0]["prompt"]


def test_low_confidence_forces_disambiguation():
    reply = dict(CTA_REPLY, confidence=0.5)
    result = _grounder(StubReasoner(reply)).ground_intent("make the button bigger", FUSED_CONTEXT)

    assert result.success
    assert result.needs_disambiguation is True


def test_empty_context_fails_without_calling_service():
    reasoner = StubReasoner()
    grounder = _grounder(reasoner)

    for context in ({}, None):
        result = grounder.ground_intent("anything", context)
        assert result.success is False
        assert "No elements found" in result.error
        assert result.selected_elements == ()
        assert result.confidence == 0.0
    assert reasoner.requests == []


def test_service_failure_is_surfaced():
    reasoner = StubReasoner(response={"success": False, "error": "AI grounding call failed: quota"})
    result = _grounder(reasoner).ground_intent("q", FUSED_CONTEXT)

    assert result.success is False
    assert "quota" in result.error


def test_service_exception_is_caught():
    result = _grounder(StubReasoner(error=TimeoutError("slow"))).ground_intent("q", FUSED_CONTEXT)

    assert result.success is False
    assert "slow" in result.error


def test_undecodable_screenshot_fails():
    reasoner = StubReasoner()
    context = dict(FUSED_CONTEXT, screenshot="%%% not base64 %%%")
    result = _grounder(reasoner).ground_intent("q", context)

    assert result.success is False
    assert "decode" in result.error
    assert reasoner.requests == []


def test_overlay_sent_when_visual_grounding_on():
    reasoner = StubReasoner()
    context = {
        "domElements": [
            {"selector": "#hero", "boundingRect": {"x": 0, "y": 0, "width": 200, "height": 50}},
            {"selector": ".cta", "boundingRect": {"x": 20, "y": 70, "width": 60, "height": 30}},
        ],
        "screenshot": _screenshot(),
    }
    grounder = _grounder(reasoner)

    grounder.ground_intent("q", context)
    request = reasoner.requests[-1]
    assert request["hasScreenshot"] is True
    assert request["screenshot"].startswith("data:image/png;base64,")
    assert "numbered on the screenshot" in request["prompt"]

    grounder.set_visual_grounding(False)
    grounder.ground_intent("q", context)
    request = reasoner.requests[-1]
    assert request["hasScreenshot"] is False
    assert request["screenshot"] is None


def test_threshold_setter_clamps_and_applies():
    grounder = _grounder()

    grounder.set_confidence_threshold(0.95)
    assert grounder.ground_intent("q", FUSED_CONTEXT).needs_disambiguation is True

    grounder.set_confidence_threshold(7)
    assert grounder.config.confidence_threshold == 1.0
    grounder.set_confidence_threshold(-1)
    assert grounder.config.confidence_threshold == 0.0


def test_malformed_reply_is_degraded_not_failed():
    result = _grounder(StubReasoner("I think it's the big one")).ground_intent("q", FUSED_CONTEXT)

    assert result.success is True
    assert result.confidence == 0.0
    assert result.needs_disambiguation is True
    assert result.parse_error


def test_accessibility_enrichment_and_failure():
    extractor = FakeExtractor([AXNode(selector=".cta", role="button", name="Buy now")])
    reasoner = StubReasoner()
    context = dict(FUSED_CONTEXT, tabId=4)

    result = _grounder(reasoner, ax_extractor=extractor).ground_intent("q", context)
    assert result.selected_elements[0].role == "button"
    assert result.selected_elements[0].a11y_enriched
    assert '[2] button: "Buy now" (.cta)' in reasoner.requests[0]["prompt"]

    broken = FakeExtractor(error=AccessibilityExtractionError("detached"))
    result = _grounder(StubReasoner(), ax_extractor=broken).ground_intent("q", context)
    assert result.success
    assert [e.selector for e in result.selected_elements] == [".cta"]


def test_generated_code_marks_refinement():
    reasoner = StubReasoner()
    context = dict(FUSED_CONTEXT, generatedCode={"variations": [{"css": ".promo { color: red; }"}]})

    _grounder(reasoner).ground_intent("q", context)

    assert "refinement request" in reasoner.requests[0]["prompt"]
    assert "[3] element: \"promo\" (.promo)" in reasoner.requests[0]["prompt"]


def test_artifacts_are_written(tmp_path):
    context = dict(
        FUSED_CONTEXT,
        domElements=[{"selector": ".cta", "boundingRect": {"x": 20, "y": 70, "width": 60, "height": 30}}],
        screenshot=_screenshot(),
    )
    reply = dict(CTA_REPLY, candidates=[{"markNumber": 1, "reasoning": "only one"}])

    _grounder(StubReasoner(reply), artifacts_dir=tmp_path).ground_intent("make it pop!", context)

    (run_dir,) = list(tmp_path.iterdir())
    assert run_dir.name.endswith("make_it_pop")
    assert (run_dir / "marked.png").exists()
    saved = json.loads((run_dir / "result.json").read_text(encoding="utf-8"))
    assert saved["query"] == "make it pop!"
    assert saved["result"]["selectedElements"][0]["selector"] == ".cta"


def test_clear_cache_forwards_to_extractor():
    extractor = FakeExtractor()
    grounder = _grounder(ax_extractor=extractor)

    grounder.clear_cache(3)
    grounder.clear_cache()
    assert extractor.cleared == [3, None]


def test_result_is_frozen_and_serialises_camel_case():
    result = _grounder().ground_intent("q", FUSED_CONTEXT)

    try:
        result.confidence = 1.0
    except ValidationError:
        pass
    else:
        raise AssertionError("result should be immutable")

    payload = result.to_payload()
    assert payload["needsDisambiguation"] is False
    assert payload["selectedElements"][0]["markNumber"] == 2
    assert payload["selectedElements"][0]["source"] == "dom_database"


def test_run_from_files(tmp_path):
    from web_grounder.core.orchestrator import run_from_files

    elements = tmp_path / "elements.json"
    elements.write_text(json.dumps({"elements": FUSED_CONTEXT["domElements"]}), encoding="utf-8")
    shot = tmp_path / "shot.png"
    shot.write_bytes(base64.b64decode(_screenshot()))
    reasoner = StubReasoner()

    result = run_from_files("make the button bigger", elements, shot, grounder=_grounder(reasoner))

    assert [e.selector for e in result.selected_elements] == [".cta"]
    assert reasoner.requests[0]["hasScreenshot"] is True


def test_config_is_read_from_environment(monkeypatch):
    monkeypatch.setenv("GROUNDING_CONFIDENCE_THRESHOLD", "0.6")
    monkeypatch.setenv("GROUNDING_VISUAL", "false")

    grounder = IntentGrounder(reasoner=StubReasoner(), ax_extractor=FakeExtractor())

    assert grounder.config.confidence_threshold == 0.6
    assert grounder.config.use_visual_grounding is False
