"""
Configuration and persisted settings for the LayerFlow plug-in.

config.json (next to the plug-in, read-only) holds the ComfyUI server URL.
settings.json (in the user's GIMP directory) remembers the
"replace original layer" toggle between sessions.
"""

import json
import logging
import os
import sys
import threading

logger = logging.getLogger(__name__)

DEFAULT_COMFY_URL = "http://127.0.0.1:8188"
CONFIG_FILENAME = "config.json"
SETTINGS_FILENAME = "settings.json"
PLUGIN_DIR = os.path.dirname(os.path.abspath(__file__))

_base_url = None
_base_url_lock = threading.Lock()


def get_config_paths(plugin_dir=None):
    """Config locations in the order they are tried"""
    return [
        os.path.join(plugin_dir or PLUGIN_DIR, CONFIG_FILENAME),
        os.path.expanduser(os.path.join("~", ".config", "layerflow", CONFIG_FILENAME)),
    ]


def load_config(paths=None):
    """
    Load the first readable config.json.

    Returns:
        dict: Parsed config, or {} when no file could be read
    """
    for config_path in paths or get_config_paths():
        try:
            if os.path.exists(config_path):
                with open(config_path, "r", encoding="utf-8") as f:
                    config = json.load(f)
                logger.debug("Loaded config from %s", config_path)
                return config if isinstance(config, dict) else {}
        except (OSError, ValueError) as e:
            logger.debug("Failed to load config from %s: %s", config_path, e)
            continue

    logger.debug("Using default config (no config file found)")
    return {}


def resolve_base_url(config):
    """Server URL from config, then COMFYUI_URL, then the default, without trailing slashes"""
    url = (config or {}).get("comfyui_url") or os.environ.get("COMFYUI_URL") or DEFAULT_COMFY_URL
    return str(url).rstrip("/")


def get_comfy_base_url(paths=None):
    """
    ComfyUI base URL, read once per process.

    The first caller loads the config; callers racing it wait on the lock
    and get the same cached value.
    """
    global _base_url
    if _base_url is not None:
        return _base_url
    with _base_url_lock:
        if _base_url is None:
            _base_url = resolve_base_url(load_config(paths))
            logger.info("ComfyUI server: %s", _base_url)
        return _base_url


def reset_base_url_cache():
    global _base_url
    with _base_url_lock:
        _base_url = None


def is_debug_mode(config):
    """Debug logging from config, overridable with LAYERFLOW_DEBUG=1"""
    debug = bool((config or {}).get("debug_mode", False))
    if os.environ.get("LAYERFLOW_DEBUG") == "1":
        debug = True
    return debug


def configure_logging(debug=False):
    """Send plug-in log output to stderr, where GIMP shows it in its console"""
    root = logging.getLogger()
    if not any(getattr(h, "_layerflow", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("LayerFlow %(levelname)s %(name)s: %(message)s"))
        handler._layerflow = True
        root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)


def get_settings_dir():
    """Where settings.json lives: GIMP's user directory, else ~/.config/layerflow"""
    try:
        from gi.repository import Gimp

        return os.path.join(Gimp.directory(), "layerflow")
    except Exception:
        return os.path.expanduser(os.path.join("~", ".config", "layerflow"))


def load_settings(settings_dir=None):
    """Persisted settings, or {} if they can't be read"""
    path = os.path.join(settings_dir or get_settings_dir(), SETTINGS_FILENAME)
    try:
        with open(path, "r", encoding="utf-8") as f:
            settings = json.load(f)
        return settings if isinstance(settings, dict) else {}
    except (OSError, ValueError) as e:
        logger.debug("No settings loaded from %s: %s", path, e)
        return {}


def save_settings(settings, settings_dir=None):
    """Overwrite settings.json with the given dict"""
    settings_dir = settings_dir or get_settings_dir()
    os.makedirs(settings_dir, exist_ok=True)
    path = os.path.join(settings_dir, SETTINGS_FILENAME)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(settings or {}, f, indent=4)
    logger.debug("Saved settings to %s", path)
    return path
