import base64
import binascii
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Any, List, NamedTuple, Optional, Sequence, Tuple

from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

from ..core.errors import OverlayRenderError
from ..core.types import ElementDescriptor, Mark


@dataclass(frozen=True)
class MarkStyle:
    box_fill: Tuple[int, int, int, int] = (255, 87, 51, 102)  # ~0.4 alpha
    border_color: Tuple[int, int, int] = (255, 87, 51)
    border_width: int = 2
    label_bg: Tuple[int, int, int] = (255, 87, 51)
    label_text: Tuple[int, int, int] = (255, 255, 255)
    font_size: int = 14
    label_padding: int = 4
    label_height: int = 20


class ElementCrop(NamedTuple):
    ordinal: int
    descriptor: ElementDescriptor
    image: Optional[Image.Image]


def decode_image(source: Any) -> Image.Image:
    """Load a screenshot from a data URL, base64 string, bytes, path or PIL image.

    Always returns a fresh image; the caller's object is never touched.
    """
    if isinstance(source, Image.Image):
        return source.copy()

    try:
        if isinstance(source, (bytes, bytearray)):
            data = bytes(source)
        elif isinstance(source, Path):
            data = source.read_bytes()
        elif isinstance(source, str):
            payload = source.partition(",")[2] if source.startswith("data:") else source
            # wrapped base64 (MIME style line breaks) is still valid input
            data = base64.b64decode("".join(payload.split()), validate=True)
        else:
            raise OverlayRenderError(f"Unsupported screenshot type: {type(source).__name__}")

        img = Image.open(BytesIO(data))
        img.load()
    except (binascii.Error, ValueError, OSError, UnidentifiedImageError) as e:
        raise OverlayRenderError(f"Failed to decode screenshot: {e}") from e
    return img


def _load_font(size: int):
    try:
        return ImageFont.load_default(size=size)
    except Exception:
        return ImageFont.load_default()


def _pixel_box(desc: ElementDescriptor) -> Tuple[int, int, int, int]:
    r = desc.bounding_rect
    x0 = int(round(r.x))
    y0 = int(round(r.y))
    return x0, y0, max(x0, int(round(r.x + r.width))), max(y0, int(round(r.y + r.height)))


def render_overlay(
    base_image: Any,
    descriptors: Sequence[ElementDescriptor],
    style: Optional[MarkStyle] = None,
) -> Tuple[Image.Image, List[Mark]]:
    """
    Draw Set-of-Mark boxes on a copy of the screenshot.

    Ordinals are 1-based positions in `descriptors` (the full fused list), so
    they line up with the numbered element list in the prompt. Descriptors
    without a positive-area rect keep their ordinal but get no mark.
    """
    style = style or MarkStyle()
    base = decode_image(base_image).convert("RGBA")

    marks = [
        Mark(ordinal, desc)
        for ordinal, desc in enumerate(descriptors, start=1)
        if desc.is_markable
    ]

    fill_layer = Image.new("RGBA", base.size, (0, 0, 0, 0))
    fill_draw = ImageDraw.Draw(fill_layer)
    for mark in marks:
        fill_draw.rectangle(_pixel_box(mark.descriptor), fill=style.box_fill)

    overlay = Image.alpha_composite(base, fill_layer)
    draw = ImageDraw.Draw(overlay)
    font = _load_font(style.font_size)

    for mark in marks:
        x0, y0, x1, y1 = _pixel_box(mark.descriptor)
        draw.rectangle([x0, y0, x1, y1], outline=style.border_color, width=style.border_width)

        label = f"[{mark.ordinal}]"
        left, _, right, _ = draw.textbbox((0, 0), label, font=font)
        label_w = (right - left) + style.label_padding * 2

        label_x = x0
        label_y = y0 - style.label_height
        # Off the top edge -> tuck the label inside the box
        if label_y < 0:
            label_y = y0 + 2

        draw.rectangle(
            [label_x, label_y, label_x + label_w, label_y + style.label_height],
            fill=style.label_bg,
        )
        draw.text((label_x + style.label_padding, label_y + 2), label, fill=style.label_text, font=font)

    print(f"[SoM] Marked screenshot created with {len(marks)}/{len(descriptors)} marks")
    return overlay.convert("RGB"), marks


def crop_element_screenshots(
    base_image: Any,
    descriptors: Sequence[ElementDescriptor],
    padding: int = 10,
) -> List[ElementCrop]:
    """Cut one padded crop per descriptor; unmarkable descriptors get None."""
    img = decode_image(base_image)
    img_w, img_h = img.size
    crops: List[ElementCrop] = []

    for ordinal, desc in enumerate(descriptors, start=1):
        if not desc.is_markable:
            crops.append(ElementCrop(ordinal, desc, None))
            continue

        r = desc.bounding_rect
        x = max(0, int(r.x - padding))
        y = max(0, int(r.y - padding))
        w = min(img_w - x, int(r.width + padding * 2))
        h = min(img_h - y, int(r.height + padding * 2))
        if w <= 0 or h <= 0:
            crops.append(ElementCrop(ordinal, desc, None))
            continue
        crops.append(ElementCrop(ordinal, desc, img.crop((x, y, x + w, y + h))))

    print(f"[SoM] Created {sum(1 for c in crops if c.image is not None)} element screenshots")
    return crops


def image_to_data_url(image: Any, max_size: Optional[int] = None) -> str:
    """Encode an image as a PNG data URL, optionally downscaling to reduce token usage."""
    img = image.copy() if isinstance(image, Image.Image) else Image.open(image)
    w, h = img.size
    if max_size and max(w, h) > max_size:
        scale = max_size / max(w, h)
        img = img.resize((int(w * scale), int(h * scale)), Image.Resampling.LANCZOS)

    buf = BytesIO()
    img.save(buf, format="PNG")
    b64 = base64.b64encode(buf.getvalue()).decode("utf-8")
    return f"data:image/png;base64,{b64}"
