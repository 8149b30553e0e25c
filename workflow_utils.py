"""
Loading and patching of the ComfyUI workflow descriptor.

The descriptor is ComfyUI's API-format JSON. Its schema belongs to ComfyUI and
to whatever custom nodes the workflow uses, so the input image is swapped in
at the text level instead of by walking node types.
"""

import json
import logging
import os
import re

from layerflow_errors import ConfigError

logger = logging.getLogger(__name__)

WORKFLOW_FILENAME = "workflow.json"
NON_WORKFLOW_FILES = {"manifest.json", "config.json", "settings.json"}

_IMAGE_FIELD_RE = re.compile(r'"image"\s*:\s*"(?:[^"\\]|\\.)*"')


def _read_json(path):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_workflow_json(workflow_dir):
    """
    Load the workflow descriptor shipped in the plug-in folder.

    workflow.json is tried first; after that any other JSON file in the folder
    that is not one of the plug-in's own config files.

    Args:
        workflow_dir: Folder holding the descriptor

    Returns:
        dict: Parsed workflow

    Raises:
        ConfigError: No readable workflow JSON was found
    """
    canonical = os.path.join(workflow_dir, WORKFLOW_FILENAME)
    try:
        workflow = _read_json(canonical)
        logger.debug("Loaded workflow from %s", canonical)
        return workflow
    except (OSError, ValueError) as e:
        logger.debug("No usable %s: %s", canonical, e)

    try:
        entries = sorted(os.listdir(workflow_dir))
    except OSError as e:
        raise ConfigError(f"Cannot read workflow folder {workflow_dir}: {e}") from e

    for name in entries:
        lowered = name.lower()
        if not lowered.endswith(".json") or lowered == WORKFLOW_FILENAME:
            continue
        if lowered in NON_WORKFLOW_FILES:
            continue
        path = os.path.join(workflow_dir, name)
        try:
            workflow = _read_json(path)
        except (OSError, ValueError) as e:
            logger.debug("Skipping %s: %s", path, e)
            continue
        logger.info("workflow.json not found, using %s", path)
        return workflow

    raise ConfigError(
        f"No workflow.json found. Put the ComfyUI API workflow JSON in {workflow_dir}"
    )


def replace_image_in_workflow(workflow, filename):
    """
    Point every "image" input of the workflow at the uploaded file.

    Every occurrence is replaced with the same value, which is only right for
    workflows with a single LoadImage-style input; more than one hit is logged.

    Args:
        workflow: Parsed workflow dict
        filename: Server-side filename returned by the upload, may include a subfolder

    Returns:
        dict: A new workflow dict with the references replaced
    """
    text = json.dumps(workflow)
    replacement = '"image": ' + json.dumps(filename)
    patched, count = _IMAGE_FIELD_RE.subn(lambda _: replacement, text)

    if count == 0:
        logger.warning("Workflow has no \"image\" input; submitting it unchanged")
    elif count > 1:
        logger.warning(
            "Workflow has %d \"image\" inputs; all of them now point at %s",
            count,
            filename,
        )
    return json.loads(patched)
