"""
Caffe network loader

Builds TensorRT engines from DIGITS/Caffe .prototxt + .caffemodel pairs.
"""

import os

from digits_trt.ai.engine import TensorRTEngine, trt
from digits_trt.app_logger import get_logger
from digits_trt.errors import ModelBuildError, UnsupportedConfigError

log = get_logger(__name__)


class CaffeRTEngine(TensorRTEngine):
    """TensorRT engine whose network comes from a Caffe model."""

    def load_model(self, prototxt_path: str, model_path: str, max_batch_size: int = 1,
                   max_network_size: int = 1 << 30):
        """
        Parse and optimize a Caffe network. Bindings must be registered first.

        Args:
            prototxt_path: Path to the .prototxt network definition
            model_path: Path to the .caffemodel weights
            max_batch_size: Largest batch that predict() will be called with
            max_network_size: Builder workspace limit in bytes
        """
        for path in (prototxt_path, model_path):
            if not os.path.exists(path):
                raise FileNotFoundError(f"Caffe model file not found: {path}")

        if not hasattr(trt, "CaffeParser"):
            raise UnsupportedConfigError(
                f"TensorRT {trt.__version__} has no Caffe parser. Export the network to ONNX "
                f"and use OnnxRTEngine, or install TensorRT 8.x")

        log.info("Parsing Caffe network %s (%s)", prototxt_path, model_path)
        builder = trt.Builder(self.logger)
        network = builder.create_network()
        parser = trt.CaffeParser()

        weights_type = trt.float16 if self.data_type == "float16" else trt.float32
        model_tensors = parser.parse(deploy=prototxt_path, model=model_path,
                                     network=network, dtype=weights_type)
        if model_tensors is None:
            raise ModelBuildError(f"Failed to parse Caffe network {prototxt_path}")

        for output in self.network_outputs:
            tensor = model_tensors.find(output.name)
            if tensor is None:
                raise ModelBuildError(f"Output {output.name} not found in {prototxt_path}")
            network.mark_output(tensor)

        self._build(builder, network, max_batch_size, max_network_size)
