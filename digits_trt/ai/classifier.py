"""
DIGITS ImageNet classifier

Loads a DIGITS classification network ("data" -> "prob") with TensorRT,
using a cached engine when one is available.
"""

from typing import List, Sequence, Tuple

import numpy as np

from digits_trt.ai.caffe_engine import CaffeRTEngine
from digits_trt.ai.preprocessor import ImageNetPreprocessor
from digits_trt.app_logger import get_logger
from digits_trt.network_io import MemoryLocation

log = get_logger(__name__)

CHANNELS_GREYSCALE = 1
CHANNELS_BGR = 3


def top_k(probabilities: np.ndarray, k: int = 5) -> List[Tuple[int, float]]:
    """Return the k most probable (class_id, probability) pairs, best first."""
    probabilities = np.asarray(probabilities).ravel()
    k = max(0, min(k, probabilities.size))
    order = np.argsort(-probabilities, kind="stable")[:k]
    return [(int(i), float(probabilities[i])) for i in order]


class DIGITSClassifier(CaffeRTEngine):
    """
    Loads and manages a DIGITS ImageNet graph with TensorRT.
    """

    INPUT_NAME = "data"
    OUTPUT_NAME = "prob"

    def __init__(self, prototxt_path: str, model_path: str,
                 cache_path: str = "classification.tensorcache",
                 nb_channels: int = CHANNELS_BGR, width: int = 224, height: int = 224,
                 nb_classes: int = 1, max_batch_size: int = 1,
                 image_net_mean: Sequence[float] = (0.0, 0.0, 0.0),
                 data_type: str = "float32", max_network_size: int = 1 << 30):
        """
        Create a classifier, building the engine if cache_path is missing or stale.

        Args:
            prototxt_path: Path to the .prototxt file
            model_path: Path to the .caffemodel file
            cache_path: Engine cache, loaded instead of building the network if present
            nb_channels: 1 for greyscale, 3 for BGR networks
            width: Network input width
            height: Network input height
            nb_classes: Number of classes the network predicts
            max_batch_size: Maximum number of images per forward pass
            image_net_mean: Mean subtracted from every pixel, BGR order
            data_type: "float32", "float16" or "int8"
            max_network_size: Maximum size in bytes of the engine workspace
        """
        if nb_channels not in (CHANNELS_GREYSCALE, CHANNELS_BGR):
            raise ValueError(f"nb_channels must be 1 or 3, got {nb_channels}")
        if nb_classes <= 0:
            raise ValueError(f"nb_classes must be positive, got {nb_classes}")

        super().__init__(max_batch_size=max_batch_size, data_type=data_type)

        self.add_input(self.INPUT_NAME, (nb_channels, height, width), np.dtype(np.float32).itemsize)
        self.add_output(self.OUTPUT_NAME, (nb_classes,), np.dtype(np.float32).itemsize)

        self.load_or_build(cache_path, lambda: self.load_model(
            prototxt_path, model_path, max_batch_size, max_network_size))

        self.model_width = width
        self.model_height = height
        self.model_depth = nb_channels
        self.nb_classes = nb_classes
        self.preprocessor = ImageNetPreprocessor(image_net_mean)

        self._inputs = self.alloc_inputs(MemoryLocation.HOST)
        self._outputs = self.alloc_outputs(MemoryLocation.HOST)

    def _preprocess(self, rgba: np.ndarray, width: int, height: int) -> np.ndarray:
        if self.model_depth == CHANNELS_GREYSCALE:
            return self.preprocessor.rgba_to_grey(rgba, width, height, self.model_width, self.model_height)
        return self.preprocessor.rgba_to_bgr(rgba, width, height, self.model_width, self.model_height)

    def classify_rgba(self, rgba: np.ndarray, width: int, height: int) -> np.ndarray:
        """
        Classify a single float RGBA image.

        Args:
            rgba: RGBA pixels in host memory, (height, width, 4)
            width: Width of the image in pixels
            height: Height of the image in pixels

        Returns:
            Array of nb_classes probabilities
        """
        return self.classify_rgba_batch([(rgba, width, height)])[0]

    def classify_rgba_batch(self, images: Sequence[Tuple[np.ndarray, int, int]]) -> np.ndarray:
        """Classify up to max_batch_size (rgba, width, height) images in one pass."""
        if not 1 <= len(images) <= self.max_batch_size:
            raise ValueError(f"Between 1 and {self.max_batch_size} images per batch, got {len(images)}")

        for b, (rgba, width, height) in enumerate(images):
            np.copyto(self._inputs[b][0], self._preprocess(rgba, width, height))

        self.predict(self._inputs, self._outputs, batch_size=len(images))
        return np.stack([np.array(self._outputs[b][0], copy=True).ravel() for b in range(len(images))])

    def classify_nv12(self, nv12: np.ndarray, width: int, height: int) -> np.ndarray:
        """Classify a single NV12 image. Returns nb_classes probabilities."""
        rgba = self.preprocessor.nv12_to_rgba(nv12, width, height)
        return self.classify_rgba(rgba, width, height)
