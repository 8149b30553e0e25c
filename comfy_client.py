"""
ComfyUI client for the LayerFlow plug-in.

Runs one job end to end: upload the input image, submit the workflow,
poll the history until an image output shows up, download it.
"""

import logging
import time
import uuid
from typing import Callable, NamedTuple, Optional

import requests

from layer_utils import find_first_output_image
from layerflow_errors import JobTimeoutError, RemoteError
from workflow_utils import load_workflow_json, replace_image_in_workflow

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0
POLL_INTERVAL = 1.2
REQUEST_TIMEOUT = 30.0


class RemoteJob(NamedTuple):
    prompt_id: str
    uploaded_filename: str


class ComfyClient:
    """Talks to a single ComfyUI server over its REST API"""

    def __init__(
        self,
        base_url,
        session=None,
        timeout=DEFAULT_TIMEOUT,
        poll_interval=POLL_INTERVAL,
        request_timeout=REQUEST_TIMEOUT,
    ):
        self.base_url = str(base_url).rstrip("/")
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout
        self.client_id = uuid.uuid4().hex

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        """Close the HTTP session if this client opened it"""
        if self._owns_session:
            self.session.close()

    def _url(self, path):
        return f"{self.base_url}{path}"

    def _json(self, response, what):
        try:
            return response.json()
        except ValueError as e:
            raise RemoteError(f"Malformed JSON from {what}", response.status_code) from e

    def _request(self, method, path, what, **kwargs):
        kwargs.setdefault("timeout", self.request_timeout)
        try:
            return self.session.request(method, self._url(path), **kwargs)
        except requests.RequestException as e:
            raise RemoteError(f"{what} failed: {e}") from e

    def ping(self):
        """Return True if the server answers /system_stats"""
        try:
            response = self.session.get(
                self._url("/system_stats"), timeout=self.request_timeout
            )
            return response.ok
        except requests.RequestException as e:
            logger.debug("Ping %s failed: %s", self.base_url, e)
            return False

    def upload_image(self, image_bytes, filename):
        """
        Upload an input image.

        The server may rename the file or store it in a subfolder, so the
        name it reports back is the one the workflow must reference.

        Returns:
            str: "subfolder/name" or just "name"
        """
        files = {"image": (filename, image_bytes, "image/png")}
        response = self._request(
            "POST",
            "/upload/image",
            "Upload to ComfyUI",
            files=files,
            data={"overwrite": "true"},
        )
        if not response.ok:
            raise RemoteError("Upload to ComfyUI failed", response.status_code)

        result = self._json(response, "/upload/image")
        name = result.get("name") if isinstance(result, dict) else None
        if not name:
            raise RemoteError("Upload response has no file name", response.status_code)

        subfolder = (result.get("subfolder") or "").replace("\\", "/").strip("/")
        effective = f"{subfolder}/{name}" if subfolder else name
        logger.debug("Uploaded %s as %s", filename, effective)
        return effective

    def submit_workflow(self, workflow):
        """Queue a workflow and return its prompt id"""
        payload = {"prompt": workflow, "client_id": self.client_id}
        response = self._request("POST", "/prompt", "Workflow submission", json=payload)
        if not response.ok:
            raise RemoteError("Workflow submission failed", response.status_code)

        result = self._json(response, "/prompt")
        prompt_id = None
        if isinstance(result, dict):
            prompt_id = result.get("prompt_id") or result.get("promptId") or result.get("id")
        if not prompt_id:
            raise RemoteError("ComfyUI did not return a prompt_id", response.status_code)
        logger.debug("Queued prompt %s", prompt_id)
        return str(prompt_id)

    def get_queue_size(self):
        """Pending plus running jobs, or None if the queue can't be read"""
        try:
            response = self.session.get(self._url("/queue"), timeout=self.request_timeout)
            if not response.ok:
                return None
            data = response.json()
            return len(data.get("queue_pending") or []) + len(data.get("queue_running") or [])
        except (requests.RequestException, ValueError, AttributeError) as e:
            logger.debug("Could not read ComfyUI queue: %s", e)
            return None

    def fetch_image(self, image_info):
        """Download an output image described by a history entry"""
        params = {
            "filename": image_info["filename"],
            "subfolder": image_info.get("subfolder") or "",
            "type": image_info.get("type") or "output",
        }
        response = self._request("GET", "/view", "Result download", params=params)
        if not response.ok:
            raise RemoteError("Result download failed", response.status_code)
        return response.content

    def wait_for_result(self, prompt_id, on_status: Optional[Callable[[str], None]] = None):
        """
        Poll /history until the prompt has an image output.

        A history request that fails at the HTTP level counts as "not ready yet";
        queue lookups are purely informational and never end the wait.

        Raises:
            RemoteError: The history could not be fetched or has an unexpected shape
            JobTimeoutError: Nothing showed up within self.timeout seconds
        """
        started = time.monotonic()
        polls = 0
        while time.monotonic() - started < self.timeout:
            polls += 1
            response = self._request("GET", f"/history/{prompt_id}", "History check")
            if response.ok:
                history = self._json(response, "/history")
                if not isinstance(history, dict):
                    raise RemoteError("Malformed /history response", response.status_code)
                try:
                    image_info = find_first_output_image(history.get(prompt_id))
                except ValueError as e:
                    raise RemoteError(f"Malformed /history response: {e}", response.status_code) from e
                if image_info:
                    if not image_info["filename"]:
                        raise RemoteError("ComfyUI reported an output image without a filename")
                    logger.debug(
                        "Prompt %s finished after %d polls: %s",
                        prompt_id,
                        polls,
                        image_info["filename"],
                    )
                    return self.fetch_image(image_info)

            queued = self.get_queue_size()
            if on_status:
                if queued:
                    on_status(f"Waiting for ComfyUI... (queue: {queued})")
                else:
                    on_status("Waiting for ComfyUI...")

            time.sleep(self.poll_interval)

        raise JobTimeoutError(
            f"Timed out after {self.timeout:g}s waiting for ComfyUI result"
        )

    def run(self, image_bytes, desired_filename, workflow_dir, on_status=None):
        """
        Upload, submit, poll and fetch in strict sequence.

        Returns:
            bytes: The first output image of the workflow
        """
        def status(message):
            if on_status:
                on_status(message)

        status("Uploading input to ComfyUI...")
        uploaded = self.upload_image(image_bytes, desired_filename)

        status("Submitting workflow...")
        workflow = replace_image_in_workflow(load_workflow_json(workflow_dir), uploaded)
        job = RemoteJob(self.submit_workflow(workflow), uploaded)

        result = self.wait_for_result(job.prompt_id, on_status=on_status)
        status("Result received")
        return result


def run_comfy_workflow(
    base_url, image_bytes, desired_filename, workflow_dir, on_status=None, **client_kwargs
):
    """Run one image through the plug-in's workflow on the given server"""
    with ComfyClient(base_url, **client_kwargs) as client:
        return client.run(image_bytes, desired_filename, workflow_dir, on_status=on_status)
