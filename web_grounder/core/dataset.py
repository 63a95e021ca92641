import json
import re
import time
from pathlib import Path
from typing import Any, Optional, Union

from .config import OUT_DIR
from .types import GroundingResult


def sanitize_filename(name: str) -> str:
    # Keep only alphanumerics, spaces, dashes, underscores
    s = re.sub(r"[^a-zA-Z0-9 \-_]", "", name)
    s = s.strip().replace(" ", "_")
    return s[:64] or "query"


def save_artifacts(
    query: str,
    result: GroundingResult,
    overlay: Optional[Any] = None,
    out_dir: Union[str, Path] = OUT_DIR,
) -> Path:
    """Write the marked screenshot and the grounding result for one call."""
    run_dir = Path(out_dir) / f"{time.strftime('%Y%m%dT%H%M%S')}_{sanitize_filename(query)}"
    run_dir.mkdir(parents=True, exist_ok=True)

    if overlay is not None:
        try:
            overlay.save(run_dir / "marked.png")
        except Exception as e:
            print(f"[Dataset] Failed to save marked screenshot: {e}")

    payload = {"query": query, "result": result.to_payload()}
    try:
        (run_dir / "result.json").write_text(json.dumps(payload, indent=2), encoding="utf-8")
    except Exception as e:
        print(f"[Dataset] Failed to write result.json: {e}")

    print(f"[Dataset] Saved grounding artifacts to {run_dir}")
    return run_dir
