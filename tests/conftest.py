"""
Shared fakes for the LayerFlow tests.

FakeHost keeps a layer tree in memory and implements the DocumentHost
contract; FakeSession stands in for requests.Session. Neither needs GIMP
or a running ComfyUI.
"""

import io
import os
import sys
from urllib.parse import urlsplit

import pytest
from PIL import Image

# Add parent directory to path so the plugin modules import without installing
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from layerflow_core import DocumentHost  # noqa: E402


def make_png(width, height, color=(255, 0, 0, 255)):
    output = io.BytesIO()
    Image.new("RGBA", (width, height), color).save(output, format="PNG")
    return output.getvalue()


def png_size(data):
    return Image.open(io.BytesIO(data)).size


class FakeLayer:
    def __init__(self, name, bounds=(0, 0, 1, 1), visible=True, children=None, color=(0, 0, 255, 255)):
        self.name = name
        self.bounds = tuple(bounds)
        self.visible = visible
        self.parent = None
        self.children = None
        if children is not None:
            self.children = []
            for child in children:
                self.add(child)
        width = max(1, int(bounds[2] - bounds[0]))
        height = max(1, int(bounds[3] - bounds[1]))
        self.pixels = Image.new("RGBA", (width, height), color)

    def add(self, child):
        child.parent = self
        self.children.append(child)
        return child

    def get_name(self):
        return self.name

    def set_name(self, name):
        self.name = name

    def get_visible(self):
        return self.visible

    def set_visible(self, visible):
        self.visible = visible

    def get_parent(self):
        return self.parent

    def get_children(self):
        return list(self.children or [])

    def is_group(self):
        return self.children is not None

    def __repr__(self):
        return f"FakeLayer({self.name!r})"


class FakeImage:
    def __init__(self, width, height, layers=()):
        self.width = width
        self.height = height
        self.layers = list(layers)


class FakeHost(DocumentHost):
    """In-memory DocumentHost; index 0 of a layer list is the top of the stack"""

    def __init__(self, width=400, height=300, layers=(), selected=None, no_image=False):
        super().__init__()
        self.image = None if no_image else FakeImage(width, height, layers)
        self.selected = list(selected or [])
        self.calls = []
        self.transactions = []
        self.fail = set()
        self.visibility_at_save = None

    def _check(self, step):
        if step in self.fail:
            raise RuntimeError(f"{step} failed")

    def _begin_transaction(self, image, name):
        self.transactions.append(name)

    def _end_transaction(self, image):
        self.calls.append(("end_transaction",))

    def _container(self, image, layer):
        return layer.parent.children if layer.parent is not None else image.layers

    def get_active_image(self):
        return self.image

    def get_selected_layers(self, image):
        return list(self.selected)

    def get_image_size(self, image):
        return image.width, image.height

    def get_top_layers(self, image):
        return list(image.layers)

    def get_layer_bounds(self, layer, include_effects=True):
        self._check("bounds")
        return layer.bounds

    def read_layer_pixels(self, image, layer, bounds):
        self._check("buffer")
        return "RGBA", layer.pixels.size, layer.pixels.tobytes()

    def save_visible_composite(self, image, path, bounds):
        from layer_utils import collect_all_layers

        self.visibility_at_save = {
            item.get_name(): item.get_visible() for item in collect_all_layers(image.layers)
        }
        self._check("save")
        x1, y1, x2, y2 = bounds
        with open(path, "wb") as f:
            f.write(make_png(int(x2 - x1), int(y2 - y1)))
        return bounds

    def place_image_file(self, image, path):
        self._check("place")
        with Image.open(path) as placed_image:
            placed_image.load()
            width, height = placed_image.size
            pixels = placed_image.copy()
        left = (image.width - width) / 2
        top = (image.height - height) / 2
        layer = FakeLayer(os.path.basename(path), (left, top, left + width, top + height))
        layer.pixels = pixels
        image.layers.insert(0, layer)
        self.calls.append(("place", path))
        return layer

    def translate_layer(self, layer, dx, dy):
        self._check("translate")
        x1, y1, x2, y2 = layer.bounds
        layer.bounds = (x1 + dx, y1 + dy, x2 + dx, y2 + dy)
        self.calls.append(("translate", dx, dy))

    def rasterize_layer(self, layer):
        self._check("rasterize")
        self.calls.append(("rasterize", layer.name))

    def _move(self, image, layer, reference, offset):
        self._container(image, layer).remove(layer)
        siblings = self._container(image, reference)
        siblings.insert(siblings.index(reference) + offset, layer)
        layer.parent = reference.parent

    def move_layer_above(self, image, layer, reference):
        self._check("move_above")
        self._move(image, layer, reference, 0)
        self.calls.append(("move_above", reference.name))

    def move_layer_below(self, image, layer, reference):
        self._check("move_below")
        self._move(image, layer, reference, 1)
        self.calls.append(("move_below", reference.name))

    def delete_layer(self, image, layer):
        self._check("delete")
        self._container(image, layer).remove(layer)
        self.calls.append(("delete", layer.name))

    def get_sibling_layers(self, image, layer):
        return list(self._container(image, layer))


class RecordingSink:
    def __init__(self):
        self.events = []

    def set_status(self, text):
        self.events.append(("status", text))

    def set_progress(self, percent, text=None):
        self.events.append(("progress", percent, text))

    def end_progress(self, text=None):
        self.events.append(("end", text))

    def show_result(self, text):
        self.events.append(("result", text))

    def texts(self, kind):
        return [event[-1] for event in self.events if event[0] == kind]


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, content=b"", bad_json=False):
        self.status_code = status_code
        self._json = json_data
        self.content = content
        self.bad_json = bad_json

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self.bad_json or self._json is None:
            raise ValueError("not JSON")
        return self._json


class FakeSession:
    """
    Routes requests to handlers keyed by (method, path prefix).

    A handler receives the keyword arguments of the request and returns a
    FakeResponse or raises.
    """

    def __init__(self, routes):
        self.routes = routes
        self.requests = []
        self.closed = False

    def close(self):
        self.closed = True

    def count(self, method, prefix):
        return sum(1 for m, path, _ in self.requests if m == method and path.startswith(prefix))

    def request(self, method, url, **kwargs):
        path = urlsplit(url).path
        self.requests.append((method, path, kwargs))
        for (route_method, prefix), handler in self.routes.items():
            if route_method == method and path.startswith(prefix):
                return handler(**kwargs)
        return FakeResponse(404)

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)


def comfy_routes(result_png, upload=None, polls_before_ready=0, prompt_id="prompt-1"):
    """Routes for a ComfyUI server that finishes after polls_before_ready empty polls"""
    state = {"history_calls": 0}

    def history(**kwargs):
        state["history_calls"] += 1
        if state["history_calls"] <= polls_before_ready:
            return FakeResponse(200, {prompt_id: {"outputs": {}}})
        return FakeResponse(
            200,
            {
                prompt_id: {
                    "outputs": {
                        "9": {"images": [{"filename": "out_00001_.png", "subfolder": "", "type": "output"}]}
                    }
                }
            },
        )

    return {
        ("POST", "/upload/image"): lambda **kw: FakeResponse(
            200, upload or {"name": "layerflow_input.png", "subfolder": "", "type": "input"}
        ),
        ("POST", "/prompt"): lambda **kw: FakeResponse(200, {"prompt_id": prompt_id, "number": 1}),
        ("GET", "/history/"): history,
        ("GET", "/queue"): lambda **kw: FakeResponse(200, {"queue_pending": [], "queue_running": [[1]]}),
        ("GET", "/view"): lambda **kw: FakeResponse(200, content=result_png),
    }


@pytest.fixture
def workflow_dir(tmp_path):
    (tmp_path / "workflow.json").write_text(
        '{"1": {"class_type": "LoadImage", "inputs": {"image": "placeholder.png"}},'
        ' "2": {"class_type": "SaveImage", "inputs": {"images": ["1", 0]}}}',
        encoding="utf-8",
    )
    return str(tmp_path)
