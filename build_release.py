#!/usr/bin/env python3
"""
Build release package for the LayerFlow GIMP plugin

Creates a ZIP file containing:
- layerflow-plugin/ folder with the plugin script, its modules,
  workflow.json and config.json
- A quick start text

Users unzip it into their GIMP plug-ins directory.
"""

import os
import sys
import shutil
import zipfile
from pathlib import Path

PLUGIN_FOLDER = "layerflow-plugin"

PLUGIN_FILES = [
    "layerflow-plugin.py",
    "layerflow_core.py",
    "layerflow_config.py",
    "layerflow_errors.py",
    "layer_utils.py",
    "comfy_client.py",
    "workflow_utils.py",
    "gimp_host.py",
    "workflow.json",
    "config.json",
]

QUICK_START = """LayerFlow v{version} - Quick Start
{rule}

1. Copy the "layerflow-plugin" folder into your GIMP plug-ins directory:

   Windows:   %APPDATA%\\GIMP\\3.0\\plug-ins\\
   macOS:     ~/Library/Application Support/GIMP/3.0/plug-ins/
   Linux:     ~/.config/GIMP/3.0/plug-ins/

2. Linux/macOS only:
   chmod +x <plug-ins>/layerflow-plugin/layerflow-plugin.py

3. Edit config.json and set comfyui_url to your ComfyUI server.

4. Replace workflow.json with your own workflow if you like
   (ComfyUI: Workflow > Export (API)). Its LoadImage "image" input is
   replaced with the uploaded layer.

5. Restart GIMP. The plugin lives under Filters > LayerFlow.

Requires the Python packages "requests" and "Pillow" in GIMP's Python.
"""


def get_version(script_dir=None):
    """Extract VERSION from layerflow-plugin.py"""
    plugin_file = Path(script_dir or Path(__file__).parent) / "layerflow-plugin.py"

    try:
        with open(plugin_file, "r", encoding="utf-8") as f:
            for line in f:
                if line.startswith("VERSION") and "=" in line:
                    return line.split("=", 1)[1].strip().strip('"').strip("'")
    except OSError:
        pass

    return "0.0.0"


def create_release_package(script_dir=None, output_dir=None):
    """
    Create a release ZIP package.

    Returns:
        Path or None: The ZIP file, or None when a required file is missing
    """
    script_dir = Path(script_dir or Path(__file__).parent)
    output_dir = Path(output_dir or script_dir / "dist")
    version = get_version(script_dir)

    output_dir.mkdir(parents=True, exist_ok=True)

    build_dir = output_dir / "build"
    if build_dir.exists():
        shutil.rmtree(build_dir)
    plugin_dir = build_dir / PLUGIN_FOLDER
    plugin_dir.mkdir(parents=True)

    print(f"📦 Building LayerFlow Release v{version}")
    print("=" * 60)

    print("\n📁 Copying plugin files...")
    for filename in PLUGIN_FILES:
        src = script_dir / filename
        if not src.exists():
            print(f"❌ ERROR: Required file not found: {filename}")
            shutil.rmtree(build_dir)
            return None
        shutil.copy2(src, plugin_dir / filename)
        print(f"  ✅ {filename}")

    os.chmod(plugin_dir / "layerflow-plugin.py", 0o755)

    with open(build_dir / "QUICK_START.txt", "w", encoding="utf-8") as f:
        f.write(QUICK_START.format(version=version, rule="=" * 60))
    print("  ✅ QUICK_START.txt")

    zip_path = output_dir / f"{PLUGIN_FOLDER}-v{version}.zip"

    print("\n📦 Creating ZIP archive...")
    with zipfile.ZipFile(zip_path, "w", zipfile.ZIP_DEFLATED) as zipf:
        for root, dirs, files in os.walk(build_dir):
            for file in sorted(files):
                file_path = Path(root) / file
                arcname = file_path.relative_to(build_dir)
                zipf.write(file_path, arcname)

    shutil.rmtree(build_dir)

    file_size = zip_path.stat().st_size / 1024
    print("\n" + "=" * 60)
    print("✅ Release package created successfully!")
    print(f"\n📦 Package: {zip_path}")
    print(f"📊 Size: {file_size:.1f} KB")

    return zip_path


def main():
    """Main entry point"""
    try:
        return 0 if create_release_package() else 1
    except Exception as e:
        print(f"\n❌ ERROR: {e}")
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
