"""
GIMP 3 implementation of the LayerFlow document host.

Only the plug-in entry script imports this module; everything it does goes
through the Gimp, Gegl and Gio introspection bindings.
"""

import logging
import os

import gi

gi.require_version("Gimp", "3.0")
gi.require_version("Gegl", "0.4")
gi.require_version("Gio", "2.0")
from gi.repository import Gimp, Gegl, Gio

from layerflow_core import DocumentHost

logger = logging.getLogger(__name__)

PIXEL_FORMAT = "R'G'B'A u8"


class GimpHost(DocumentHost):
    """DocumentHost backed by a live GIMP image"""

    def __init__(self, image=None):
        super().__init__()
        self.image = image

    def _begin_transaction(self, image, name):
        logger.debug("Undo group start: %s", name)
        image.undo_group_start()

    def _end_transaction(self, image):
        image.undo_group_end()

    def get_active_image(self):
        if self.image is not None:
            return self.image
        images = Gimp.get_images()
        return images[0] if images else None

    def get_selected_layers(self, image):
        return list(image.get_selected_layers() or [])

    def get_image_size(self, image):
        return image.get_width(), image.get_height()

    def get_top_layers(self, image):
        return list(image.get_layers() or [])

    def get_layer_bounds(self, layer, include_effects=True):
        # GIMP reports the same extent with and without layer effects
        success, x, y = layer.get_offsets()
        if not success:
            return None
        return (x, y, x + layer.get_width(), y + layer.get_height())

    def read_layer_pixels(self, image, layer, bounds):
        x1, y1, x2, y2 = bounds
        width, height = x2 - x1, y2 - y1
        if width <= 0 or height <= 0:
            raise ValueError(f"Empty layer bounds: {bounds}")

        # Buffer coordinates are relative to the layer, not the image
        buffer = layer.get_buffer()
        rect = Gegl.Rectangle.new(0, 0, width, height)
        data = buffer.get(rect, 1.0, PIXEL_FORMAT, Gegl.AbyssPolicy.NONE)
        if not data:
            raise RuntimeError(f"Layer {layer.get_name()} returned no pixel data")
        logger.debug("Read %d bytes from %s (%dx%d)", len(data), layer.get_name(), width, height)
        return "RGBA", (width, height), bytes(data)

    def save_visible_composite(self, image, path, bounds):
        img_width, img_height = self.get_image_size(image)
        x1, y1, x2, y2 = bounds
        x1, y1 = max(0, x1), max(0, y1)
        x2, y2 = min(img_width, x2), min(img_height, y2)
        if x2 <= x1 or y2 <= y1:
            raise ValueError(f"Layer lies outside the image: {bounds}")

        temp_image = image.duplicate()
        try:
            temp_image.crop(x2 - x1, y2 - y1, x1, y1)

            # Hidden layers are dropped by the merge
            merged_layer = temp_image.merge_visible_layers(Gimp.MergeType.CLIP_TO_IMAGE)
            if not merged_layer:
                raise RuntimeError("Nothing visible to export")

            pdb_proc = Gimp.get_pdb().lookup_procedure("file-png-export")
            pdb_config = pdb_proc.create_config()
            pdb_config.set_property("run-mode", Gimp.RunMode.NONINTERACTIVE)
            pdb_config.set_property("image", temp_image)
            pdb_config.set_property("file", Gio.File.new_for_path(path))
            pdb_config.set_property("options", None)
            result = pdb_proc.run(pdb_config)
            if result.index(0) != Gimp.PDBStatusType.SUCCESS:
                raise RuntimeError("PNG export of the visible composite failed")
        finally:
            temp_image.delete()

        logger.debug("Saved visible composite to %s", path)
        return (x1, y1, x2, y2)

    def place_image_file(self, image, path):
        layer = Gimp.file_load_layer(
            Gimp.RunMode.NONINTERACTIVE, image, Gio.File.new_for_path(path)
        )
        if layer is None:
            return None
        layer.set_name(os.path.basename(path))
        image.insert_layer(layer, None, 0)

        img_width, img_height = self.get_image_size(image)
        layer.set_offsets(
            int(round((img_width - layer.get_width()) / 2)),
            int(round((img_height - layer.get_height()) / 2)),
        )
        return layer

    def translate_layer(self, layer, dx, dy):
        success, x, y = layer.get_offsets()
        if not success:
            raise RuntimeError(f"Cannot read offsets of {layer.get_name()}")
        layer.set_offsets(int(round(x + dx)), int(round(y + dy)))

    def rasterize_layer(self, layer):
        # Bake non-destructive filters into the pixels
        layer.merge_filters()

    def _move_next_to(self, image, layer, reference, above):
        image.reorder_item(layer, reference.get_parent(), image.get_item_position(reference))
        layer_pos = image.get_item_position(layer)
        reference_pos = image.get_item_position(reference)
        # Position 0 is the top of the stack
        if above and layer_pos > reference_pos:
            image.raise_item(layer)
        elif not above and layer_pos < reference_pos:
            image.lower_item(layer)

    def move_layer_above(self, image, layer, reference):
        self._move_next_to(image, layer, reference, above=True)

    def move_layer_below(self, image, layer, reference):
        self._move_next_to(image, layer, reference, above=False)

    def delete_layer(self, image, layer):
        image.remove_layer(layer)

    def get_sibling_layers(self, image, layer):
        parent = layer.get_parent()
        if parent is not None:
            return list(parent.get_children() or [])
        return list(image.get_layers() or [])

    def flush(self):
        Gimp.displays_flush()
