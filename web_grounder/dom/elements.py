from typing import Any, Dict, List, Optional

from .accessibility import accessible_name
from ..core.config import CLICKABLE_ROLES

# Evaluated per element in the page. Prefers #id, then a unique class chain,
# then a short tag path with :nth-child.
SELECTOR_JS = """el => {
  if (el.id) return '#' + CSS.escape(el.id);
  if (el.className && typeof el.className === 'string') {
    const classes = Array.from(el.classList)
      .filter(c => !/^(is-|has-|active|selected|hover|focus)/.test(c));
    if (classes.length > 0) {
      const sel = '.' + classes.map(c => CSS.escape(c)).join('.');
      try {
        if (document.querySelectorAll(sel).length === 1) return sel;
      } catch (e) {}
    }
  }
  const path = [];
  let current = el;
  let depth = 0;
  while (current && current !== document.body && depth < 4) {
    let part = current.tagName.toLowerCase();
    if (current.id) {
      path.unshift(part + '#' + CSS.escape(current.id));
      break;
    }
    if (current.className && typeof current.className === 'string') {
      const classes = Array.from(current.classList).slice(0, 2).filter(Boolean);
      if (classes.length) part += '.' + classes.map(c => CSS.escape(c)).join('.');
    }
    const siblings = Array.from(current.parentElement ? current.parentElement.children : [])
      .filter(child => child.tagName === current.tagName);
    if (siblings.length > 1) part += ':nth-child(' + (siblings.indexOf(current) + 1) + ')';
    path.unshift(part);
    current = current.parentElement;
    depth++;
  }
  return path.join(' > ');
}"""

MIN_AREA = 50


def _element_selector(el) -> Optional[str]:
    try:
        selector = el.evaluate(SELECTOR_JS)
    except Exception as e:
        print(f"[Elements] Selector generation failed: {e}")
        return None
    return selector or None


def collect_dom_elements(page, roles: Optional[List[str]] = None) -> List[Dict[str, Any]]:
    """Return visible clickable elements as raw DOM records keyed by selector."""
    records: List[Dict[str, Any]] = []
    seen: set = set()

    for role in roles or CLICKABLE_ROLES:
        loc = page.get_by_role(role)
        count = loc.count()

        for i in range(count):
            el = loc.nth(i)
            try:
                if not el.is_visible():
                    continue
            except Exception:
                continue

            box = el.bounding_box()
            if not box:
                continue
            if box["width"] * box["height"] < MIN_AREA:
                continue

            selector = _element_selector(el)
            if not selector or selector in seen:
                continue
            seen.add(selector)

            records.append(
                {
                    "selector": selector,
                    "role": role,
                    "text": accessible_name(el),
                    "placeholder": el.get_attribute("placeholder") or "",
                    "boundingRect": {
                        "x": box["x"],
                        "y": box["y"],
                        "width": box["width"],
                        "height": box["height"],
                    },
                }
            )

    print(f"[Elements] Collected {len(records)} DOM elements")
    return records
