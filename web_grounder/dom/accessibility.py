import time
from typing import Any, Dict, List, Optional, Tuple

from ..core.config import A11Y_CACHE_TIMEOUT, INTERACTIVE_ROLES
from ..core.errors import AccessibilityExtractionError
from ..core.types import AXNode, BoundingRect

# Runs against the resolved DOM node; returns a selector and its client rect.
DESCRIBE_NODE_JS = """function() {
  function generateSelector(el) {
    if (el.id) return '#' + CSS.escape(el.id);
    if (el.className && typeof el.className === 'string') {
      const classes = el.className.trim().split(/\\s+/).filter(Boolean);
      if (classes.length > 0) {
        return el.tagName.toLowerCase() + '.' + classes.map(c => CSS.escape(c)).join('.');
      }
    }
    return el.tagName ? el.tagName.toLowerCase() : null;
  }
  if (!this || this.nodeType !== 1) return null;
  const r = this.getBoundingClientRect();
  return {
    selector: generateSelector(this),
    rect: {x: r.x, y: r.y, width: r.width, height: r.height}
  };
}"""


def accessible_name(el) -> str:
    """Best-effort accessible name: aria-label -> title -> aria-labelledby -> inner_text."""
    for attr in ("aria-label", "title"):
        val = el.get_attribute(attr)
        if val:
            return val.strip()

    labelled_by = el.get_attribute("aria-labelledby")
    if labelled_by:
        for id_ in labelled_by.split():
            try:
                labelled_el = el.page.locator(f"#{id_}")
                if labelled_el.count() > 0:
                    txt = labelled_el.first.inner_text().strip()
                    if txt:
                        return txt
            except Exception:
                continue

    try:
        txt = el.inner_text().strip()
        if txt:
            return txt
    except Exception:
        pass

    return ""


def _ax_value(field: Any) -> Any:
    # CDP wraps most AX fields as {"type": ..., "value": ...}
    if isinstance(field, dict):
        return field.get("value")
    return field


def _flatten_properties(raw_props: List[Dict[str, Any]]) -> Dict[str, Any]:
    props: Dict[str, Any] = {}
    for prop in raw_props:
        name = prop.get("name")
        if name:
            props[name] = _ax_value(prop.get("value"))
    return props


class AccessibilityTreeExtractor:
    """
    Pulls the browser accessibility tree over CDP and reduces it to
    interactive/landmark nodes that can be addressed by a CSS selector.

    Pages are looked up by tab id; register them with `register_page`.
    Trees are memoised per tab for `cache_timeout` seconds.
    """

    def __init__(self, pages: Optional[Dict[Any, Any]] = None, cache_timeout: float = A11Y_CACHE_TIMEOUT):
        self._pages: Dict[Any, Any] = dict(pages or {})
        self._cache: Dict[str, Tuple[float, List[AXNode]]] = {}
        self.cache_timeout = cache_timeout

    def register_page(self, tab_id: Any, page) -> None:
        self._pages[tab_id] = page
        self.clear_cache(tab_id)

    def extract_accessibility_tree(self, tab_id: Any) -> List[AXNode]:
        cache_key = f"tab_{tab_id}"
        cached = self._cache.get(cache_key)
        if cached and time.monotonic() - cached[0] < self.cache_timeout:
            print(f"[A11yTree] Using cached tree ({len(cached[1])} nodes)")
            return list(cached[1])

        page = self._pages.get(tab_id)
        if page is None:
            raise AccessibilityExtractionError(f"No page registered for tab {tab_id}")

        print(f"[A11yTree] Extracting accessibility tree for tab {tab_id}...")
        try:
            session = page.context.new_cdp_session(page)
        except Exception as e:
            raise AccessibilityExtractionError(
                f"Could not open CDP session for tab {tab_id}: {e}") from e

        try:
            session.send("Accessibility.enable")
            response = session.send("Accessibility.getFullAXTree")
            raw_nodes = (response or {}).get("nodes") or []
            print(f"[A11yTree] Raw tree retrieved: {len(raw_nodes)} nodes")
            nodes = self.process_tree(raw_nodes)
            self.map_to_dom(nodes, session)
        except Exception as e:
            raise AccessibilityExtractionError(
                f"Accessibility tree extraction failed for tab {tab_id}: {e}") from e
        finally:
            try:
                session.detach()
            except Exception as e:
                print(f"[A11yTree] Failed to detach CDP session: {e}")

        # Unmapped nodes can't be fused; zero-size ones have no visible footprint.
        nodes = [
            n for n in nodes
            if n.selector and (n.bounding_rect is None or n.bounding_rect.is_markable)
        ]
        self._cache[cache_key] = (time.monotonic(), nodes)
        print(f"[A11yTree] Extracted {len(nodes)} interactive elements")
        return list(nodes)

    def process_tree(self, raw_nodes: List[Dict[str, Any]]) -> List[AXNode]:
        """Keep visible nodes whose role is interactive or a landmark."""
        processed: List[AXNode] = []
        for node in raw_nodes:
            if node.get("ignored"):
                continue
            role = _ax_value(node.get("role"))
            if not role:
                continue
            role = str(role).lower()
            if role not in INTERACTIVE_ROLES:
                continue

            properties = _flatten_properties(node.get("properties") or [])
            if properties.get("hidden"):
                continue

            processed.append(
                AXNode(
                    role=role,
                    name=_ax_value(node.get("name")),
                    description=_ax_value(node.get("description")),
                    value=_ax_value(node.get("value")),
                    properties=properties,
                    node_id=node.get("nodeId"),
                    backend_node_id=node.get("backendDOMNodeId"),
                )
            )
        return processed

    def map_to_dom(self, nodes: List[AXNode], session) -> None:
        """Fill `selector` and `bounding_rect` in place from the live DOM."""
        try:
            session.send("DOM.enable")
        except Exception as e:
            print(f"[A11yTree] Could not enable DOM domain: {e}")
            return

        for node in nodes:
            if node.backend_node_id is None:
                continue
            try:
                resolved = session.send("DOM.resolveNode", {"backendNodeId": node.backend_node_id})
                object_id = ((resolved or {}).get("object") or {}).get("objectId")
                if not object_id:
                    continue
                described = session.send(
                    "Runtime.callFunctionOn",
                    {
                        "objectId": object_id,
                        "functionDeclaration": DESCRIBE_NODE_JS,
                        "returnByValue": True,
                    },
                )
                data = ((described or {}).get("result") or {}).get("value")
                if not data:
                    continue
                node.selector = data.get("selector") or None
                if data.get("rect"):
                    node.bounding_rect = BoundingRect(**data["rect"])
            except Exception as e:
                print(f"[A11yTree] Could not resolve node {node.backend_node_id}: {e}")

        mapped = sum(1 for n in nodes if n.selector)
        print(f"[A11yTree] Mapped {mapped}/{len(nodes)} nodes to selectors")

    @staticmethod
    def find_by_role(tree: List[AXNode], role: str) -> List[AXNode]:
        role_lc = role.lower()
        return [n for n in tree if n.role == role_lc]

    @staticmethod
    def find_by_role_and_name(tree: List[AXNode], role: str, name: str) -> List[AXNode]:
        role_lc = role.lower()
        name_lc = name.lower()
        return [n for n in tree if n.role == role_lc and name_lc in n.name.lower()]

    def clear_cache(self, tab_id: Any = None) -> None:
        if tab_id is not None:
            self._cache.pop(f"tab_{tab_id}", None)
            print(f"[A11yTree] Cleared cache for tab {tab_id}")
        else:
            self._cache.clear()
            print("[A11yTree] Cleared all cache")
