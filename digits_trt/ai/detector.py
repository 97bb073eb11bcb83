"""
DIGITS DetectNet detector

Loads a DIGITS DetectNet graph ("data" -> "coverage" + "bboxes") with TensorRT
and clusters its grid output into rectangles.
"""

from typing import List, Optional, Sequence

import numpy as np

from digits_trt.ai.caffe_engine import CaffeRTEngine
from digits_trt.ai.classifier import CHANNELS_BGR, CHANNELS_GREYSCALE
from digits_trt.ai.detectnet import ClassRectangle, ClusterParams, decode_detections
from digits_trt.ai.preprocessor import ImageNetPreprocessor
from digits_trt.app_logger import get_logger
from digits_trt.network_io import MemoryLocation

log = get_logger(__name__)


class DIGITSDetector(CaffeRTEngine):
    """
    Loads and manages a DIGITS DetectNet graph with TensorRT.
    """

    INPUT_NAME = "data"
    OUTPUT_COVERAGE_NAME = "coverage"
    OUTPUT_BBOXES_NAME = "bboxes"

    def __init__(self, prototxt_path: str, model_path: str,
                 cache_path: str = "detection.tensorcache",
                 nb_channels: int = CHANNELS_BGR, width: int = 224, height: int = 224,
                 nb_classes: int = 1, max_batch_size: int = 1,
                 image_net_mean: Sequence[float] = (0.0, 0.0, 0.0),
                 data_type: str = "float32", max_network_size: int = 1 << 30,
                 cluster_params: Optional[ClusterParams] = None):
        """
        Create a detector, building the engine if cache_path is missing or stale.

        Args:
            prototxt_path: Path to the .prototxt file
            model_path: Path to the .caffemodel file
            cache_path: Engine cache, loaded instead of building the network if present
            nb_channels: 1 for greyscale, 3 for BGR networks
            width: Network input width, a multiple of the grid stride
            height: Network input height, a multiple of the grid stride
            nb_classes: Number of classes to detect
            max_batch_size: Keep at one for realtime use
            image_net_mean: Mean subtracted from every pixel, BGR order
            data_type: "float32", "float16" or "int8"
            max_network_size: Maximum size in bytes of the engine workspace
            cluster_params: Coverage threshold and grouping parameters
        """
        self.cluster_params = cluster_params or ClusterParams()
        stride = self.cluster_params.stride
        if nb_channels not in (CHANNELS_GREYSCALE, CHANNELS_BGR):
            raise ValueError(f"nb_channels must be 1 or 3, got {nb_channels}")
        if width % stride or height % stride:
            raise ValueError(f"Input {width}x{height} is not a multiple of the grid stride {stride}")
        if nb_classes <= 0:
            raise ValueError(f"nb_classes must be positive, got {nb_classes}")

        super().__init__(max_batch_size=max_batch_size, data_type=data_type)

        grid = (height // stride, width // stride)
        ele_size = np.dtype(np.float32).itemsize
        bbox_planes = 4 * nb_classes if nb_classes > 1 else 4
        self.add_input(self.INPUT_NAME, (nb_channels, height, width), ele_size)
        self.add_output(self.OUTPUT_COVERAGE_NAME, (nb_classes,) + grid, ele_size)
        self.add_output(self.OUTPUT_BBOXES_NAME, (bbox_planes,) + grid, ele_size)

        self.load_or_build(cache_path, lambda: self.load_model(
            prototxt_path, model_path, max_batch_size, max_network_size))

        self.model_width = width
        self.model_height = height
        self.model_depth = nb_channels
        self.nb_classes = nb_classes
        self.preprocessor = ImageNetPreprocessor(image_net_mean)

        self._inputs = self.alloc_inputs(MemoryLocation.HOST)
        self._outputs = self.alloc_outputs(MemoryLocation.HOST)

    def detect_rgba(self, rgba: np.ndarray, width: int, height: int) -> List[ClassRectangle]:
        """
        Detect objects in a single float RGBA image.

        Args:
            rgba: RGBA pixels in host memory, (height, width, 4)
            width: Width of the image in pixels
            height: Height of the image in pixels

        Returns:
            Detections in image pixel coordinates, most confident first
        """
        if self.model_depth == CHANNELS_GREYSCALE:
            data = self.preprocessor.rgba_to_grey(rgba, width, height, self.model_width, self.model_height)
        else:
            data = self.preprocessor.rgba_to_bgr(rgba, width, height, self.model_width, self.model_height)
        np.copyto(self._inputs[0][0], data)

        self.predict(self._inputs, self._outputs, batch_size=1)

        coverage, bboxes = self._outputs[0]
        detections = decode_detections(coverage, bboxes, (self.model_width, self.model_height),
                                       (width, height), self.cluster_params)
        log.debug("%d detections", len(detections))
        return detections

    def detect_nv12(self, nv12: np.ndarray, width: int, height: int) -> List[ClassRectangle]:
        """Detect objects in a single NV12 image."""
        rgba = self.preprocessor.nv12_to_rgba(nv12, width, height)
        return self.detect_rgba(rgba, width, height)
