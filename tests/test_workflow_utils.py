"""
Tests for workflow descriptor loading and image reference patching.
"""

import json
import logging

import pytest

import workflow_utils
from layerflow_errors import ConfigError
from workflow_utils import load_workflow_json, replace_image_in_workflow


def test_replace_single_image_input():
    workflow = {
        "1": {"class_type": "LoadImage", "inputs": {"image": "old.png", "upload": "image"}},
        "2": {"class_type": "SaveImage", "inputs": {"images": ["1", 0], "filename_prefix": "x"}},
    }
    patched = replace_image_in_workflow(workflow, "layerflow/input.png")

    assert patched["1"]["inputs"]["image"] == "layerflow/input.png"
    # Other fields, including ones that merely mention "image", are untouched
    assert patched["1"]["inputs"]["upload"] == "image"
    assert patched["2"]["inputs"]["images"] == ["1", 0]
    assert workflow["1"]["inputs"]["image"] == "old.png"


def test_replace_escapes_backslashes_and_quotes():
    workflow = {"1": {"inputs": {"image": 'has "quotes".png'}}}
    patched = replace_image_in_workflow(workflow, 'sub\\dir/we"ird.png')
    assert patched["1"]["inputs"]["image"] == 'sub\\dir/we"ird.png'


def test_replace_every_image_input_and_warn(caplog):
    workflow = {
        "1": {"inputs": {"image": "a.png"}},
        "2": {"inputs": {"image": "b.png"}},
    }
    with caplog.at_level(logging.WARNING, logger="workflow_utils"):
        patched = replace_image_in_workflow(workflow, "in.png")

    assert patched["1"]["inputs"]["image"] == "in.png"
    assert patched["2"]["inputs"]["image"] == "in.png"
    assert "2 \"image\" inputs" in caplog.text


def test_load_prefers_workflow_json(tmp_path):
    (tmp_path / "a_other.json").write_text(json.dumps({"other": True}), encoding="utf-8")
    (tmp_path / "workflow.json").write_text(json.dumps({"canonical": True}), encoding="utf-8")
    assert load_workflow_json(str(tmp_path)) == {"canonical": True}


def test_load_falls_back_to_other_json(tmp_path):
    (tmp_path / "manifest.json").write_text(json.dumps({"manifest": True}), encoding="utf-8")
    (tmp_path / "config.json").write_text(json.dumps({"comfyui_url": "x"}), encoding="utf-8")
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
    (tmp_path / "remove_bg.json").write_text(json.dumps({"fallback": True}), encoding="utf-8")
    (tmp_path / "notes.txt").write_text("ignore me", encoding="utf-8")

    assert load_workflow_json(str(tmp_path)) == {"fallback": True}


def test_load_skips_broken_canonical_file(tmp_path):
    (tmp_path / "workflow.json").write_text("{", encoding="utf-8")
    (tmp_path / "second.json").write_text(json.dumps({"second": True}), encoding="utf-8")
    assert load_workflow_json(str(tmp_path)) == {"second": True}


def test_load_without_workflow_raises_config_error(tmp_path):
    (tmp_path / "manifest.json").write_text("{}", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_workflow_json(str(tmp_path))

    with pytest.raises(ConfigError):
        load_workflow_json(str(tmp_path / "missing"))


def test_shipped_workflow_has_one_image_input():
    import os

    plugin_dir = os.path.dirname(os.path.abspath(workflow_utils.__file__))
    workflow = load_workflow_json(plugin_dir)
    patched = replace_image_in_workflow(workflow, "uploaded.png")
    text = json.dumps(patched)
    assert text.count('"image": "uploaded.png"') == 1
