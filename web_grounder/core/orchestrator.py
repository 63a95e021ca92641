import json
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

from playwright.sync_api import sync_playwright

from .grounder import IntentGrounder
from .types import GroundingContext, GroundingResult
from ..dom.elements import collect_dom_elements


def run_on_url(
    user_query: str,
    url: str,
    grounder: Optional[IntentGrounder] = None,
    generated_code: Optional[Any] = None,
    headless: bool = True,
) -> GroundingResult:
    """Open `url`, capture screenshot + DOM elements + a11y tree, ground the query."""
    grounder = grounder or IntentGrounder()

    print("[Grounder] Launching Playwright and loading page...")
    with sync_playwright() as p:
        browser = p.chromium.launch(headless=headless)
        try:
            page = browser.new_page()
            page.goto(url)
            page.wait_for_timeout(2000)  # let the UI settle

            screenshot = page.screenshot()
            elements = collect_dom_elements(page)

            tab_id = str(uuid4())
            if grounder.ax_extractor is not None:
                grounder.ax_extractor.register_page(tab_id, page)

            context = GroundingContext(
                tab_id=tab_id,
                dom_elements=elements,
                generated_code=generated_code,
                screenshot=screenshot,
            )
            result = grounder.ground_intent(user_query, context)
            grounder.clear_cache(tab_id)
        finally:
            browser.close()

    return result


def run_from_files(
    user_query: str,
    elements_path: Path,
    screenshot_path: Optional[Path] = None,
    grounder: Optional[IntentGrounder] = None,
) -> GroundingResult:
    """Ground against a saved elements JSON (list or {"elements": [...]}) and screenshot."""
    grounder = grounder or IntentGrounder()

    data = json.loads(Path(elements_path).read_text(encoding="utf-8"))
    elements = data.get("elements", []) if isinstance(data, dict) else data

    context = GroundingContext(
        dom_elements=elements,
        screenshot=Path(screenshot_path) if screenshot_path else None,
    )
    return grounder.ground_intent(user_query, context)


def print_summary(user_query: str, result: GroundingResult) -> None:
    print("\n=== Grounding result ===")
    print("User query:", user_query)
    if not result.success:
        print("Failed:", result.error)
        return
    print("Interpretation:", result.interpretation)
    print(f"Confidence: {result.confidence:.2f}")
    print("Needs disambiguation:", result.needs_disambiguation)
    if result.parse_error:
        print("Parse error:", result.parse_error)
    if result.selected_elements:
        print("Selected (mark, role, name, selector):")
        for e in result.selected_elements:
            print(f"  - [{e.mark_number}] | {e.role} | {e.name} | {e.selector} | {e.reasoning}")
    if result.unresolved_marks:
        print("Unknown marks referenced:", result.unresolved_marks)
