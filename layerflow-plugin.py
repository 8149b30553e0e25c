#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
LayerFlow - send a layer through a ComfyUI workflow and put the result back
A GIMP 3.x plugin that exports the selected layer, runs it through the
workflow.json shipped next to this file on a ComfyUI server, and places the
output over the original layer.
"""

import logging
import sys
import os
import threading
import time

import gi

gi.require_version("Gimp", "3.0")
gi.require_version("GimpUi", "3.0")
gi.require_version("Gtk", "3.0")
from gi.repository import Gimp, GimpUi, GLib, Gtk

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from comfy_client import DEFAULT_TIMEOUT, ComfyClient
from gimp_host import GimpHost
from layerflow_config import (
    configure_logging,
    get_comfy_base_url,
    is_debug_mode,
    load_config,
    load_settings,
    save_settings,
)
from layerflow_core import StatusSink, run_layerflow
from layerflow_errors import JobTimeoutError

logger = logging.getLogger("layerflow")

VERSION = "0.3.0"
PROC_RUN = "layerflow-run-workflow"
PROC_TEST = "layerflow-test-connection"
RUN_LABEL = "Run Workflow"


class GimpStatusSink(StatusSink):
    """Pushes progress into the dialog widgets and GIMP's progress bar"""

    def __init__(self, status_label=None, result_label=None, progress_bar=None, run_button=None):
        self.status_label = status_label
        self.result_label = result_label
        self.progress_bar = progress_bar
        self.run_button = run_button

    def _on_main_loop(self, func, *args):
        def update_ui():
            try:
                func(*args)
            except Exception as e:
                logger.debug("UI update failed: %s", e)
            return False  # Remove from idle queue after running once

        GLib.idle_add(update_ui)

    def _set_label(self, label, text):
        if label is not None:
            self._on_main_loop(label.set_text, text or "")

    def set_status(self, text):
        logger.debug("Status: %s", text)
        self._set_label(self.status_label, text)

    def set_progress(self, percent, text=None):
        if text:
            self.set_status(text)

        def update_bar():
            if self.progress_bar is not None:
                self.progress_bar.show()
                if percent is None:
                    self.progress_bar.pulse()
                else:
                    self.progress_bar.set_fraction(max(0, min(100, percent)) / 100.0)
            if self.run_button is not None and percent is not None:
                self.run_button.set_label(f"Processing {int(percent)}%...")
                self.run_button.set_sensitive(False)

        self._on_main_loop(update_bar)

        if percent is not None:
            try:
                Gimp.progress_set_text(text or "")
                Gimp.progress_update(max(0, min(100, percent)) / 100.0)
            except Exception as e:
                # Only valid while a procedure is running
                logger.debug("GIMP progress update skipped: %s", e)

    def end_progress(self, text=None):
        def reset():
            if self.progress_bar is not None:
                self.progress_bar.hide()
            if self.run_button is not None:
                self.run_button.set_label(RUN_LABEL)
                self.run_button.set_sensitive(True)

        self._on_main_loop(reset)
        if text:
            self.set_status(text)

    def show_result(self, text):
        self._set_label(self.result_label, text)


class LayerFlowPlugin(Gimp.PlugIn):
    """ComfyUI round trip for the selected layer"""

    def __init__(self):
        super().__init__()
        self.config = load_config()
        configure_logging(is_debug_mode(self.config))
        self.settings = load_settings()

    def _get_timeout(self):
        try:
            return float(self.config.get("timeout", DEFAULT_TIMEOUT))
        except (TypeError, ValueError):
            return DEFAULT_TIMEOUT

    def _process_pending_events(self):
        """Process a few pending GTK events so the dialog stays responsive"""
        try:
            event_count = 0
            while Gtk.events_pending() and event_count < 5:
                Gtk.main_iteration_do(False)
                event_count += 1
        except Exception as e:
            logger.debug("GTK event processing warning (non-fatal): %s", e)

    def _run_threaded_operation(self, operation_func, operation_name="ComfyUI round trip"):
        """Run operation_func on a worker thread while keeping the UI responsive"""
        max_wait_time = self._get_timeout() + 60
        logger.debug("Starting threaded %s", operation_name)

        result = {"value": None, "error": None, "completed": False}

        def operation_thread():
            try:
                result["value"] = operation_func()
            except Exception as e:
                logger.debug("[THREAD] %s exception: %s", operation_name, e)
                result["error"] = e
            finally:
                result["completed"] = True

        thread = threading.Thread(target=operation_thread)
        thread.daemon = True
        thread.start()

        start_time = time.time()
        while not result["completed"]:
            self._process_pending_events()
            if time.time() - start_time > max_wait_time:
                raise JobTimeoutError(f"{operation_name} did not finish in {max_wait_time:g}s")
            time.sleep(0.05)

        if result["error"] is not None:
            raise result["error"]
        return result["value"]

    def _run_operation(self, image, sink, run_button=None):
        if run_button is not None:
            run_button.set_sensitive(False)
        try:
            return run_layerflow(
                GimpHost(image),
                sink,
                replace_original=bool(self.settings.get("replaceOriginal")),
                remote_runner=self._run_threaded_operation,
                client_options={"timeout": self._get_timeout()},
            )
        finally:
            if run_button is not None:
                run_button.set_sensitive(True)
                run_button.set_label(RUN_LABEL)

    def _on_replace_toggled(self, check):
        self.settings["replaceOriginal"] = bool(check.get_active())
        try:
            save_settings(self.settings)
        except OSError as e:
            logger.warning("Could not save settings: %s", e)

    def _show_dialog(self, image):
        """Show the LayerFlow dialog; stays open so several layers can be processed"""
        GimpUi.init("layerflow-plugin")

        use_header_bar = Gtk.Settings.get_default().get_property("gtk-dialogs-use-header")
        dialog = GimpUi.Dialog(use_header_bar=use_header_bar, title="LayerFlow")
        dialog.set_default_size(420, 220)
        dialog.set_resizable(True)
        dialog.add_button("Close", Gtk.ResponseType.CLOSE)
        run_button = dialog.add_button(RUN_LABEL, Gtk.ResponseType.OK)

        content_area = dialog.get_content_area()
        content_area.set_spacing(10)
        content_area.set_margin_start(20)
        content_area.set_margin_end(20)
        content_area.set_margin_top(20)
        content_area.set_margin_bottom(20)

        server_label = Gtk.Label(label=f"ComfyUI: {get_comfy_base_url()}")
        server_label.set_halign(Gtk.Align.START)
        content_area.pack_start(server_label, False, False, 0)

        replace_check = Gtk.CheckButton(label="Replace original layer")
        replace_check.set_active(bool(self.settings.get("replaceOriginal")))
        replace_check.connect("toggled", self._on_replace_toggled)
        content_area.pack_start(replace_check, False, False, 0)

        progress_bar = Gtk.ProgressBar()
        progress_bar.set_no_show_all(True)
        content_area.pack_start(progress_bar, False, False, 0)

        status_label = Gtk.Label(label="Select a layer and press Run")
        status_label.set_halign(Gtk.Align.START)
        content_area.pack_start(status_label, False, False, 0)

        result_label = Gtk.Label()
        result_label.set_halign(Gtk.Align.START)
        result_label.set_line_wrap(True)
        content_area.pack_start(result_label, False, False, 0)

        content_area.show_all()
        sink = GimpStatusSink(status_label, result_label, progress_bar, run_button)

        try:
            while dialog.run() == Gtk.ResponseType.OK:
                self._run_operation(image, sink, run_button)
        finally:
            dialog.destroy()

    def do_query_procedures(self):
        return [PROC_RUN, PROC_TEST]

    def do_set_i18n(self, name):
        return False

    def do_create_procedure(self, name):
        if name == PROC_RUN:
            procedure = Gimp.ImageProcedure.new(
                self, name, Gimp.PDBProcType.PLUGIN, self.run_workflow, None
            )
            procedure.set_image_types("*")
            procedure.set_menu_label("Run ComfyUI Workflow on Layer...")
            procedure.add_menu_path("<Image>/Filters/LayerFlow/")
            procedure.set_documentation(
                "Run a ComfyUI workflow on the selected layer",
                "Uploads the selected layer to ComfyUI, runs workflow.json and "
                "places the result over the layer",
                name,
            )
            procedure.set_attribution("LayerFlow", "LayerFlow", "2025")
            return procedure

        elif name == PROC_TEST:
            procedure = Gimp.ImageProcedure.new(
                self, name, Gimp.PDBProcType.PLUGIN, self.run_test_connection, None
            )
            procedure.set_image_types("*")
            procedure.set_sensitivity_mask(Gimp.ProcedureSensitivityMask.ALWAYS)
            procedure.set_menu_label("Test ComfyUI Connection")
            procedure.add_menu_path("<Image>/Filters/LayerFlow/")
            return procedure

        return None

    def run_workflow(self, procedure, run_mode, image, drawables, config, run_data):
        logger.debug("LayerFlow called, run mode %s", run_mode)

        if image is None:
            Gimp.message("❌ No image is open")
            return procedure.new_return_values(Gimp.PDBStatusType.CANCEL, GLib.Error())

        if run_mode == Gimp.RunMode.INTERACTIVE:
            self._show_dialog(image)
            return procedure.new_return_values(Gimp.PDBStatusType.SUCCESS, GLib.Error())

        success, message = self._run_operation(image, StatusSink())
        if success:
            return procedure.new_return_values(Gimp.PDBStatusType.SUCCESS, GLib.Error())
        Gimp.message(f"❌ LayerFlow failed: {message}")
        return procedure.new_return_values(
            Gimp.PDBStatusType.EXECUTION_ERROR, GLib.Error(message)
        )

    def run_test_connection(self, procedure, run_mode, image, drawables, config, run_data):
        base_url = get_comfy_base_url()
        with ComfyClient(base_url, request_timeout=10) as client:
            reachable = client.ping()
        if reachable:
            Gimp.message(f"✅ ComfyUI is reachable at {base_url}")
        else:
            Gimp.message(
                f"❌ Cannot reach ComfyUI at {base_url}\n\n"
                "Check comfyui_url in config.json next to the plugin."
            )
        return procedure.new_return_values(Gimp.PDBStatusType.SUCCESS, GLib.Error())


# Entry point
if __name__ == "__main__":
    Gimp.main(LayerFlowPlugin.__gtype__, sys.argv)
