"""
Error types raised by the LayerFlow plug-in.

Every phase of an operation raises one of these; the top-level handler in
layerflow_core.run_layerflow turns them into a single status message.
"""


class LayerFlowError(Exception):
    """Base class for all LayerFlow failures"""


class NoDocumentError(LayerFlowError):
    """No image is open in the host"""

    def __init__(self, message="No image is open"):
        super().__init__(message)


class NoSelectionError(LayerFlowError):
    """No layer is selected in the active image"""

    def __init__(self, message="No layer selected"):
        super().__init__(message)


class ExtractionError(LayerFlowError):
    """Neither the buffer read nor the composite export produced an image"""


class ConfigError(LayerFlowError):
    """Workflow descriptor missing or unparseable"""


class RemoteError(LayerFlowError):
    """The ComfyUI server rejected a request or answered with garbage"""

    def __init__(self, message, status=None):
        if status is not None:
            message = f"{message} (HTTP {status})"
        super().__init__(message)
        self.status = status


class JobTimeoutError(LayerFlowError, TimeoutError):
    """No output appeared in the history before the polling window closed"""


class CompositionError(LayerFlowError):
    """Placing, renaming or deleting a layer failed"""
