"""
LayerFlow core: layer extraction, result compositing and the operation itself.

Nothing here imports GIMP. The host editor is reached through a DocumentHost
implementation (gimp_host.GimpHost inside GIMP, an in-memory fake in tests)
and progress goes out through a StatusSink.
"""

import enum
import io
import logging
import os
import tempfile
from contextlib import contextmanager
from typing import NamedTuple

from PIL import Image

from comfy_client import run_comfy_workflow
from layer_utils import (
    Anchor,
    anchor_from_bounds,
    calculate_delta_to_anchor,
    calculate_translation_delta,
    compute_next_layer_name,
    isolate_target_visibility,
    needs_translation,
)
from layerflow_config import PLUGIN_DIR, get_comfy_base_url
from layerflow_errors import (
    CompositionError,
    ExtractionError,
    LayerFlowError,
    NoDocumentError,
    NoSelectionError,
)

logger = logging.getLogger(__name__)

INPUT_FILENAME = "layerflow_input.png"
RESULT_FILENAME = "layerflow_result.png"


class ExtractionMethod(enum.Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


class ExtractionResult(NamedTuple):
    image_bytes: bytes
    anchor: Anchor
    method: ExtractionMethod


class DocumentHost:
    """
    Everything LayerFlow needs from the image editor.

    Layers handed out by a host must provide get_name, set_name, get_visible,
    set_visible, get_parent, get_children and is_group. Bounds are
    (x1, y1, x2, y2) tuples in image pixels.
    """

    def __init__(self):
        self._in_transaction = False

    @contextmanager
    def transaction(self, image, name):
        """Group every edit made inside the block into one undo step"""
        if self._in_transaction:
            raise RuntimeError(f"Nested host transaction: {name}")
        self._begin_transaction(image, name)
        self._in_transaction = True
        try:
            yield
        finally:
            try:
                self._end_transaction(image)
            finally:
                self._in_transaction = False

    def _begin_transaction(self, image, name):
        pass

    def _end_transaction(self, image):
        pass

    def get_active_image(self):
        raise NotImplementedError

    def get_selected_layers(self, image):
        raise NotImplementedError

    def get_image_size(self, image):
        raise NotImplementedError

    def get_top_layers(self, image):
        raise NotImplementedError

    def get_layer_bounds(self, layer, include_effects=True):
        """Bounds of the layer; None when the host can't tell effects apart"""
        raise NotImplementedError

    def read_layer_pixels(self, image, layer, bounds):
        """Raw pixels of the layer inside bounds as (mode, (width, height), bytes)"""
        raise NotImplementedError

    def save_visible_composite(self, image, path, bounds):
        """Save what is currently visible inside bounds as PNG, return the saved bounds"""
        raise NotImplementedError

    def place_image_file(self, image, path):
        """Import an image file as a new layer centred in the image"""
        raise NotImplementedError

    def translate_layer(self, layer, dx, dy):
        raise NotImplementedError

    def rasterize_layer(self, layer):
        raise NotImplementedError

    def move_layer_above(self, image, layer, reference):
        raise NotImplementedError

    def move_layer_below(self, image, layer, reference):
        raise NotImplementedError

    def delete_layer(self, image, layer):
        raise NotImplementedError

    def get_sibling_layers(self, image, layer):
        raise NotImplementedError

    def flush(self):
        pass


class StatusSink:
    """Receives progress events. The default implementation only logs."""

    def set_status(self, text):
        logger.info("%s", text)

    def set_progress(self, percent, text=None):
        if text:
            logger.info("[%s] %s", "..." if percent is None else f"{int(percent)}%", text)

    def end_progress(self, text=None):
        if text:
            logger.info("%s", text)

    def show_result(self, text):
        if text:
            logger.info("%s", text)


def _notify(sink, method, *args):
    if sink is None:
        return
    try:
        getattr(sink, method)(*args)
    except Exception as e:
        logger.debug("Status sink %s failed: %s", method, e)


def best_effort(description, func, *args, log_level=logging.DEBUG):
    """Run a cosmetic step; failures are logged and dropped"""
    try:
        return func(*args)
    except Exception as e:
        logger.log(log_level, "%s failed (ignored): %s", description, e)
        return None


def get_temp_dir():
    path = os.path.join(tempfile.gettempdir(), "layerflow")
    os.makedirs(path, exist_ok=True)
    return path


def encode_png(mode, size, raw):
    """Encode a raw pixel buffer as PNG bytes"""
    image = Image.frombytes(mode, tuple(size), bytes(raw))
    output = io.BytesIO()
    image.save(output, format="PNG")
    return output.getvalue()


def _write_file(path, data):
    with open(path, "wb") as f:
        f.write(data)


def export_layer_via_buffer(host, image, layer, temp_dir):
    """
    Read the layer's own pixels straight from its buffer.

    Does not touch the document, so nothing flickers and nothing lands in
    the undo history.
    """
    bounds = host.get_layer_bounds(layer, include_effects=False)
    if bounds is None:
        bounds = host.get_layer_bounds(layer)
    if not bounds:
        raise ExtractionError("Layer bounds are not available")

    mode, size, raw = host.read_layer_pixels(image, layer, bounds)
    png_data = encode_png(mode, size, raw)
    _write_file(os.path.join(temp_dir, INPUT_FILENAME), png_data)
    logger.debug("Buffer export: %d bytes, bounds %s", len(png_data), bounds)
    return ExtractionResult(png_data, anchor_from_bounds(bounds), ExtractionMethod.PRIMARY)


def export_layer_via_composite(host, image, layer, temp_dir):
    """
    Export the layer by hiding everything else and saving the visible composite.

    Visibility is restored even if saving fails.
    """
    bounds = host.get_layer_bounds(layer)
    if not bounds:
        raise ExtractionError("Layer bounds are not available")

    path = os.path.join(temp_dir, INPUT_FILENAME)
    with host.transaction(image, "LayerFlow: export layer"):
        restore = isolate_target_visibility(host.get_top_layers(image), layer)
        try:
            saved_bounds = host.save_visible_composite(image, path, bounds)
        finally:
            restore()

    with open(path, "rb") as f:
        png_data = f.read()
    logger.debug("Composite export: %d bytes, bounds %s", len(png_data), saved_bounds)
    return ExtractionResult(
        png_data, anchor_from_bounds(saved_bounds or bounds), ExtractionMethod.FALLBACK
    )


def extract_layer(host, image, layer, temp_dir=None):
    """
    Get PNG bytes and the anchor rectangle for a layer.

    The buffer read is tried first; any failure there falls back to the
    visibility-isolation export.

    Raises:
        ExtractionError: No image, or both export paths failed
    """
    if image is None:
        raise ExtractionError("No image is open")
    temp_dir = temp_dir or get_temp_dir()

    try:
        result = export_layer_via_buffer(host, image, layer, temp_dir)
    except Exception as primary_error:
        logger.info("Buffer export failed, falling back to composite: %s", primary_error)
        try:
            result = export_layer_via_composite(host, image, layer, temp_dir)
        except Exception as fallback_error:
            raise ExtractionError(
                f"Could not read layer pixels: {primary_error}; "
                f"composite export also failed: {fallback_error}"
            ) from fallback_error

    logger.info("Extracted layer via %s path, anchor %s", result.method.value, tuple(result.anchor))
    return result


def insert_and_align_result(
    host, image, layer, result_bytes, replace_original, anchor, temp_dir=None
):
    """
    Place the workflow result over the original layer.

    The result is imported, moved onto the anchor and flattened. With
    replace_original it takes the original's place and name, otherwise it
    sits above the original under a derived name.

    Returns:
        The new layer
    """
    temp_dir = temp_dir or get_temp_dir()
    path = os.path.join(temp_dir, RESULT_FILENAME)
    try:
        _write_file(path, result_bytes)
    except OSError as e:
        raise CompositionError(f"Could not write result file: {e}") from e

    with host.transaction(image, "LayerFlow: insert result"):
        try:
            placed = host.place_image_file(image, path)
        except Exception as e:
            raise CompositionError(f"Could not place result: {e}") from e
        if placed is None:
            raise CompositionError("Placing the result produced no layer")

        # Above the original for inspection; replace mode moves it below later
        best_effort("Move result above original", host.move_layer_above, image, placed, layer)

        # The host may have snapped the centred origin to whole pixels, so measure
        # from where the frame actually is
        frame = best_effort("Read result frame", host.get_layer_bounds, placed)
        if frame:
            dx, dy = calculate_delta_to_anchor(anchor, frame[0], frame[1])
        else:
            doc_width, doc_height = host.get_image_size(image)
            dx, dy = calculate_translation_delta(anchor, doc_width, doc_height)
        if needs_translation(dx, dy):
            best_effort(
                "Align result", host.translate_layer, placed, dx, dy, log_level=logging.WARNING
            )

        best_effort("Rasterize result", host.rasterize_layer, placed)

        original_name = layer.get_name() or "Layer"
        try:
            if replace_original:
                host.move_layer_below(image, placed, layer)
                placed.set_name(original_name)
                host.delete_layer(image, layer)
            else:
                siblings = host.get_sibling_layers(image, layer)
                placed.set_name(compute_next_layer_name(original_name, siblings))
        except LayerFlowError:
            raise
        except Exception as e:
            raise CompositionError(f"Could not finish placing result: {e}") from e

    host.flush()
    logger.info("Inserted result as %s (dx=%.2f, dy=%.2f)", placed.get_name(), dx, dy)
    return placed


def _call_directly(func):
    return func()


def run_layerflow(
    host,
    sink=None,
    replace_original=False,
    base_url=None,
    workflow_dir=None,
    temp_dir=None,
    remote_runner=None,
    client_options=None,
):
    """
    Run one full round trip for the selected layer.

    Args:
        host: DocumentHost for the editor
        sink: StatusSink receiving progress
        replace_original: Overwrite the source layer instead of adding one
        base_url: ComfyUI server, defaults to the configured one
        workflow_dir: Folder holding workflow.json, defaults to the plug-in folder
        temp_dir: Scratch folder for PNG files
        remote_runner: Called with a zero-argument function doing the network
            round trip; lets the caller move it off the UI thread
        client_options: Extra keyword arguments for ComfyClient

    Returns:
        tuple: (success: bool, message: str)
    """
    remote_runner = remote_runner or _call_directly
    _notify(sink, "show_result", "")
    _notify(sink, "set_progress", 3, "Preparing...")

    try:
        image = host.get_active_image()
        if image is None:
            raise NoDocumentError()
        selected = host.get_selected_layers(image) or []
        if not selected:
            raise NoSelectionError()
        layer = selected[0]

        base_url = base_url or get_comfy_base_url()
        temp_dir = temp_dir or get_temp_dir()

        _notify(sink, "set_progress", 12, "Reading layer pixels...")
        extraction = extract_layer(host, image, layer, temp_dir)

        _notify(sink, "set_progress", 45, "Uploading to ComfyUI and running...")

        def on_status(message):
            _notify(sink, "set_status", message)

        def remote():
            return run_comfy_workflow(
                base_url,
                extraction.image_bytes,
                INPUT_FILENAME,
                workflow_dir or PLUGIN_DIR,
                on_status=on_status,
                **(client_options or {}),
            )

        result_bytes = remote_runner(remote)

        _notify(sink, "set_progress", 90, "Placing result and aligning...")
        insert_and_align_result(
            host, image, layer, result_bytes, replace_original, extraction.anchor, temp_dir
        )

        message = "Result inserted"
        _notify(sink, "end_progress", "Done")
        _notify(sink, "show_result", message)
        return True, message

    except Exception as e:
        message = str(e) or e.__class__.__name__
        logger.exception("LayerFlow failed: %s", message)
        _notify(sink, "end_progress", "Failed")
        _notify(sink, "show_result", message)
        return False, message
