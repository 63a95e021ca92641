import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..core.config import GENERIC_ROLE
from ..core.types import (
    AXNode,
    BoundingRect,
    ElementDescriptor,
    ElementSource,
    GroundingContext,
)

DOM_QUERY_PATTERN = re.compile(
    r"(?:querySelector|querySelectorAll|getElementById|getElementsByClassName|getElementsByTagName)"
    r"\s*\(\s*['\"`]([^'\"`]+)['\"`]\s*\)"
)
CSS_TOKEN_PATTERN = re.compile(r"(#[\w-]+|\.[\w-]+)")


def _ingest_rect(raw: Any) -> Optional[BoundingRect]:
    if isinstance(raw, BoundingRect):
        return raw.model_copy()
    if not isinstance(raw, dict):
        return None
    try:
        return BoundingRect.model_validate(raw)
    except ValidationError:
        return None


def ingest_dom_element(raw: Any) -> Optional[ElementDescriptor]:
    """Map one element-database record into a descriptor; None if unusable."""
    if isinstance(raw, ElementDescriptor):
        raw = raw.model_dump(by_alias=True)
    if not isinstance(raw, dict):
        return None
    selector = raw.get("selector")
    if not selector or not isinstance(selector, str):
        return None

    visual = raw.get("visual")
    position = visual.get("position") if isinstance(visual, dict) else None

    try:
        return ElementDescriptor(
            selector=selector,
            role=raw.get("role") or GENERIC_ROLE,
            # unlabeled inputs are still identifiable by their placeholder
            name=raw.get("text") or raw.get("name") or raw.get("placeholder") or "",
            bounding_rect=_ingest_rect(position or raw.get("boundingRect")),
            source=ElementSource.DOM_DATABASE,
        )
    except ValidationError as e:
        print(f"[Fusion] Skipping malformed DOM element {selector!r}: {e}")
        return None


def ingest_ax_node(node: Any) -> Optional[ElementDescriptor]:
    if isinstance(node, dict):
        try:
            node = AXNode.model_validate(node)
        except ValidationError as e:
            print(f"[Fusion] Skipping malformed a11y node: {e}")
            return None
    if not isinstance(node, AXNode) or not node.selector:
        return None
    return ElementDescriptor(
        selector=node.selector,
        role=node.role or None,
        name=node.name,
        bounding_rect=_ingest_rect(node.bounding_rect),
        source=ElementSource.ACCESSIBILITY_TREE,
    )


def enrich_descriptor(existing: ElementDescriptor, incoming: ElementDescriptor) -> None:
    """Add a11y semantics to an existing descriptor. Never removes information."""
    if incoming.role and (not existing.role or existing.role == GENERIC_ROLE):
        existing.role = incoming.role
    if incoming.name and len(incoming.name) > len(existing.name):
        existing.name = incoming.name
    if existing.bounding_rect is None and incoming.bounding_rect is not None:
        existing.bounding_rect = incoming.bounding_rect
    if existing.source != ElementSource.ACCESSIBILITY_TREE:
        existing.a11y_enriched = True


def extract_elements_from_code(generated_code: Any) -> List[ElementDescriptor]:
    """
    Best-effort scrape of element references out of generated CSS/JS.

    `#id` tokens become role "unique", `.class` tokens and DOM-query literals
    become role "element". Repeated selectors keep the last occurrence.
    """
    try:
        if isinstance(generated_code, dict):
            variations = generated_code.get("variations")
        else:
            variations = getattr(generated_code, "variations", None)
        if not variations:
            return []

        found: Dict[str, ElementDescriptor] = {}
        for variation in variations:
            code = f"{variation.get('css') or ''} {variation.get('js') or ''}"

            for token in CSS_TOKEN_PATTERN.findall(code):
                selector = token.strip()
                found[selector] = ElementDescriptor(
                    selector=selector,
                    role="unique" if selector.startswith("#") else GENERIC_ROLE,
                    name=selector[1:],
                    source=ElementSource.GENERATED_CODE,
                )

            for match in DOM_QUERY_PATTERN.finditer(code):
                selector = match.group(1)
                found[selector] = ElementDescriptor(
                    selector=selector,
                    role=GENERIC_ROLE,
                    name=selector,
                    source=ElementSource.GENERATED_CODE,
                )
    except (AttributeError, TypeError, ValidationError) as e:
        print(f"[Fusion] Could not scan generated code: {e}")
        return []

    return list(found.values())


class ElementFusion:
    """
    Gathers descriptors from up to three sources and fuses them by selector.

    Priority: DOM database > accessibility tree > generated code.
    The DOM source is ground truth for existence (it covers pages with poor
    semantic markup); the a11y tree adds roles/labels; generated code only
    contributes selectors nobody else knows about.
    """

    def __init__(self, ax_extractor=None):
        self.ax_extractor = ax_extractor

    def gather(self, context: Any) -> List[ElementDescriptor]:
        if not isinstance(context, GroundingContext):
            context = GroundingContext.model_validate(context or {})

        fused: List[ElementDescriptor] = []
        by_selector: Dict[str, ElementDescriptor] = {}

        # Source 1: DOM elements (primary)
        if context.dom_elements:
            added = 0
            for raw in context.dom_elements:
                desc = ingest_dom_element(raw)
                if desc is None or desc.selector in by_selector:
                    continue
                fused.append(desc)
                by_selector[desc.selector] = desc
                added += 1
            print(f"[Fusion] Added {added} elements from DOM database (primary)")

        # Source 2: accessibility tree (supplemental)
        if context.tab_id is not None and self.ax_extractor is not None:
            try:
                ax_tree = self.ax_extractor.extract_accessibility_tree(context.tab_id)
            except Exception as e:
                print(f"[Fusion] Could not extract a11y tree (continuing without it): {e}")
                ax_tree = []

            new_count = 0
            enriched_count = 0
            for node in ax_tree:
                desc = ingest_ax_node(node)
                if desc is None:
                    continue
                existing = by_selector.get(desc.selector)
                if existing is None:
                    fused.append(desc)
                    by_selector[desc.selector] = desc
                    new_count += 1
                else:
                    enrich_descriptor(existing, desc)
                    enriched_count += 1
            print(f"[Fusion] A11y tree: +{new_count} new, ~{enriched_count} enriched")

        # Source 3: generated code (refinements)
        if context.generated_code:
            code_elements = extract_elements_from_code(context.generated_code)
            added = 0
            for desc in code_elements:
                if desc.selector in by_selector:
                    continue
                fused.append(desc)
                by_selector[desc.selector] = desc
                added += 1
            print(f"[Fusion] Added {added}/{len(code_elements)} elements from generated code")

        return fused
