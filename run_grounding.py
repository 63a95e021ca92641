"""
Entry point for the intent grounder: collects page elements, the
accessibility tree and a screenshot, and asks a vision LLM which
element(s) an editing request refers to.

Grounds against a live page by default; set ELEMENTS_PATH (and optionally
SCREENSHOT_PATH) to replay a saved capture instead.
"""

from __future__ import annotations
from pathlib import Path

from web_grounder.core.orchestrator import print_summary, run_from_files, run_on_url

TARGET_URL = "https://example.com"
USER_QUERY = "make the main heading bigger"

ELEMENTS_PATH = None  # e.g. Path("captures/elements.json")
SCREENSHOT_PATH = None  # e.g. Path("captures/screenshot.png")


def main():
    if ELEMENTS_PATH:
        result = run_from_files(USER_QUERY, Path(ELEMENTS_PATH), SCREENSHOT_PATH)
    else:
        result = run_on_url(USER_QUERY, TARGET_URL)
    print_summary(USER_QUERY, result)


if __name__ == "__main__":
    main()
