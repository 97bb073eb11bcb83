"""
ONNX network loader

Builds TensorRT engines from ONNX exports, for TensorRT releases without the
Caffe parser.
"""

import os

from digits_trt.ai.engine import TensorRTEngine, trt
from digits_trt.app_logger import get_logger
from digits_trt.errors import ModelBuildError

log = get_logger(__name__)


class OnnxRTEngine(TensorRTEngine):
    """TensorRT engine whose network comes from an ONNX file."""

    def load_model(self, onnx_path: str, max_batch_size: int = 1, max_network_size: int = 1 << 30):
        """
        Parse and optimize an ONNX network. Bindings must be registered first.

        Network outputs that were not registered with add_output() are unmarked
        so the engine only exposes the bound tensors.
        """
        if not os.path.exists(onnx_path):
            raise FileNotFoundError(f"ONNX model not found: {onnx_path}")

        flags = 0
        if hasattr(trt.NetworkDefinitionCreationFlag, "EXPLICIT_BATCH"):
            flags = 1 << int(trt.NetworkDefinitionCreationFlag.EXPLICIT_BATCH)

        builder = trt.Builder(self.logger)
        network = builder.create_network(flags)
        parser = trt.OnnxParser(network, self.logger)

        log.info("Parsing ONNX model %s", onnx_path)
        with open(onnx_path, "rb") as model:
            if not parser.parse(model.read()):
                errors = [str(parser.get_error(i)) for i in range(parser.num_errors)]
                raise ModelBuildError(f"Failed to parse {onnx_path}: {'; '.join(errors)}")

        wanted = {t.name for t in self.network_outputs}
        found = set()
        for i in reversed(range(network.num_outputs)):
            tensor = network.get_output(i)
            if tensor.name in wanted:
                found.add(tensor.name)
            else:
                network.unmark_output(tensor)
        missing = wanted - found
        if missing:
            raise ModelBuildError(f"Outputs {sorted(missing)} not found in {onnx_path}")

        inputs = {network.get_input(i).name for i in range(network.num_inputs)}
        for tensor in self.network_inputs:
            if tensor.name not in inputs:
                raise ModelBuildError(f"Input {tensor.name} not found in {onnx_path}")

        self._build(builder, network, max_batch_size, max_network_size)
