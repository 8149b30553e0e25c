"""
Pure layer geometry, naming and tree utilities for the LayerFlow plug-in.

These functions contain no GIMP dependencies and can be unit tested independently.
Layers are only touched through the item methods GIMP exposes
(get_name, get_visible, set_visible, get_parent, get_children, is_group),
so any object offering those methods works.
"""

import logging
import re
from typing import NamedTuple

logger = logging.getLogger(__name__)

RESULT_TAG = "futu"
TRANSLATE_EPSILON = 0.01


class Anchor(NamedTuple):
    """Pixel rectangle an extracted image corresponds to in the document"""

    left: float
    top: float
    width: float
    height: float


def anchor_from_bounds(bounds):
    """
    Build an Anchor from (x1, y1, x2, y2) bounds.

    Args:
        bounds: (left, top, right, bottom) in document pixels

    Returns:
        Anchor: width and height are clamped to at least 1 pixel
    """
    x1, y1, x2, y2 = (float(v) for v in bounds)
    return Anchor(x1, y1, max(1.0, x2 - x1), max(1.0, y2 - y1))


def calculate_centered_origin(doc_width, doc_height, width, height):
    """
    Top-left corner of a width x height rectangle centred in the document.

    This is where the host drops a freshly placed image before alignment.
    """
    return (doc_width - width) / 2, (doc_height - height) / 2


def calculate_translation_delta(anchor, doc_width, doc_height, frame_size=None):
    """
    Calculate the translation that moves a centred placement onto the anchor.

    Args:
        anchor: Anchor the result must land on
        doc_width: Document width in pixels
        doc_height: Document height in pixels
        frame_size: (width, height) of the placed frame; defaults to the anchor size,
            which is what the host produces when the result keeps the input size

    Returns:
        tuple: (dx, dy) to add to the placed layer's offsets
    """
    width, height = frame_size or (anchor.width, anchor.height)
    centered_left, centered_top = calculate_centered_origin(
        doc_width, doc_height, width, height
    )
    return anchor.left - centered_left, anchor.top - centered_top


def calculate_delta_to_anchor(anchor, left, top):
    """Translation that moves a frame whose top-left is (left, top) onto the anchor"""
    return anchor.left - left, anchor.top - top


def needs_translation(dx, dy, epsilon=TRANSLATE_EPSILON):
    """True when the delta is large enough to be worth a transform call"""
    return abs(dx) > epsilon or abs(dy) > epsilon


def _layer_name(item):
    if isinstance(item, str):
        return item
    try:
        return item.get_name() or ""
    except Exception:
        return ""


def split_result_name(name, tag=RESULT_TAG):
    """
    Strip a trailing _<tag> or _<tag>_<N> suffix.

    Returns:
        tuple: (stem, n) where n is None when no suffix was present and 1 for a bare _<tag>
    """
    match = re.match(
        r"^(.*?)_" + re.escape(tag) + r"(?:_(\d+))?$", name, re.IGNORECASE
    )
    if not match or not match.group(1):
        return name, None
    return match.group(1), int(match.group(2)) if match.group(2) else 1


def compute_next_layer_name(base_name, siblings, tag=RESULT_TAG):
    """
    Compute a collision-free name for a non-destructive result layer.

    "Photo" becomes "Photo_futu", then "Photo_futu_2", "Photo_futu_3" and so on,
    depending on which of those names already exist among the siblings.
    An existing suffix on base_name is stripped first, so running on a
    previous result still numbers against the original stem.

    Args:
        base_name: Name of the source layer
        siblings: Sibling layers or layer names to check for collisions
        tag: Fixed marker inserted after the stem

    Returns:
        str: The next free derived name
    """
    base_name = base_name or "Layer"
    stem, _ = split_result_name(base_name, tag)
    derived = f"{stem}_{tag}"
    pattern = re.compile(r"^" + re.escape(derived) + r"(?:_(\d+))?$", re.IGNORECASE)

    max_n = 0
    for sibling in siblings or []:
        match = pattern.match(_layer_name(sibling))
        if match:
            n = int(match.group(1)) if match.group(1) else 1
            max_n = max(max_n, n)

    if max_n <= 0:
        return derived
    if max_n == 1:
        return f"{derived}_2"
    return f"{derived}_{max_n + 1}"


def _children(item):
    try:
        if hasattr(item, "is_group") and not item.is_group():
            return []
        return list(item.get_children() or [])
    except Exception:
        return []


def collect_all_layers(top_layers):
    """
    Walk the layer tree depth first.

    Args:
        top_layers: Layers at the root of the document

    Returns:
        list: Every layer, parents before their children
    """
    result = []
    stack = list(reversed(list(top_layers)))
    while stack:
        item = stack.pop()
        result.append(item)
        stack.extend(reversed(_children(item)))
    return result


def isolate_target_visibility(top_layers, target):
    """
    Hide every layer except the target and its ancestors.

    The original visibility of every layer is captured before anything is
    changed. The returned callable puts it back; call it from a finally block.

    Args:
        top_layers: Layers at the root of the document
        target: Layer that must stay visible

    Returns:
        callable: Restores the captured visibility state
    """
    snapshot = [(item, item.get_visible()) for item in collect_all_layers(top_layers)]

    def set_visible(item, visible):
        try:
            item.set_visible(visible)
        except Exception as e:
            logger.debug("Could not set visibility of %s: %s", _layer_name(item), e)

    def restore():
        for item, visible in snapshot:
            set_visible(item, visible)

    for item, _ in snapshot:
        set_visible(item, False)

    node = target
    while node is not None:
        set_visible(node, True)
        node = node.get_parent()

    return restore


def find_first_output_image(history_entry):
    """
    Find the first image produced by a finished ComfyUI prompt.

    Args:
        history_entry: The value stored under the prompt id in /history/<id>,
            or None while the prompt has no entry yet

    Returns:
        dict or None: {'filename', 'subfolder', 'type'} of the first image

    Raises:
        ValueError: The entry does not have the shape ComfyUI produces
    """
    if history_entry is None:
        return None
    if not isinstance(history_entry, dict):
        raise ValueError("History entry is not an object")
    outputs = history_entry.get("outputs") or {}
    if not isinstance(outputs, dict):
        raise ValueError("History outputs are not an object")

    for node_id, node_output in outputs.items():
        if not isinstance(node_output, dict):
            raise ValueError(f"Output of node {node_id} is not an object")
        images = node_output.get("images") or []
        if not isinstance(images, list):
            raise ValueError(f"Images of node {node_id} are not a list")
        if images:
            image = images[0]
            if not isinstance(image, dict):
                raise ValueError(f"Image entry of node {node_id} is not an object")
            return {
                "filename": image.get("filename") or "",
                "subfolder": image.get("subfolder") or "",
                "type": image.get("type") or "output",
            }
    return None
