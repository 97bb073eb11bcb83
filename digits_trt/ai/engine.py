"""
TensorRT Engine Lifecycle

Base class which binds named network inputs/outputs, loads a cached engine or
builds a new one, stages host/device memory and runs batched forward passes.
Subclasses provide load_model() for a particular network format.
"""

import logging
import os
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np

from digits_trt.app_logger import get_logger
from digits_trt.errors import (
    DeviceMemoryError,
    InferenceError,
    ModelBuildError,
    ModelDeserializeError,
    TensorRTError,
    UnsupportedConfigError,
)
from digits_trt.network_io import (
    DATA_TYPES,
    LocatedExecutionMemory,
    MemoryLocation,
    NetworkInput,
    NetworkIO,
    NetworkOutput,
    allocate,
    binding_shape,
)

try:
    import tensorrt as trt
    import pycuda.driver as cuda
    TRT_AVAILABLE = True
except ImportError:
    trt = None
    cuda = None
    TRT_AVAILABLE = False

log = get_logger(__name__)

_TRT_LOGGER = None


def trt_logger():
    """
    Return the process-wide TensorRT logger.

    TensorRT messages are forwarded to the "digits_trt.tensorrt" logger so
    they end up in the same files as the application logs.
    """
    global _TRT_LOGGER
    if _TRT_LOGGER is not None:
        return _TRT_LOGGER

    severity_levels = {
        trt.ILogger.Severity.INTERNAL_ERROR: logging.CRITICAL,
        trt.ILogger.Severity.ERROR: logging.ERROR,
        trt.ILogger.Severity.WARNING: logging.WARNING,
        trt.ILogger.Severity.INFO: logging.INFO,
        trt.ILogger.Severity.VERBOSE: logging.DEBUG,
    }
    trt_log = get_logger("tensorrt")

    class _LoggingBridge(trt.ILogger):
        def __init__(self):
            trt.ILogger.__init__(self)

        def log(self, severity, msg):
            trt_log.log(severity_levels.get(severity, logging.INFO), msg)

    _TRT_LOGGER = _LoggingBridge()
    return _TRT_LOGGER


class TensorRTEngine:
    """
    Loads and manages a TensorRT engine, hiding device/host memory management.

    Usage:
        1. add_input()/add_output() for every binding
        2. load_or_build() (or load_cache() / load_model())
        3. predict()
    """

    def __init__(self, max_batch_size: int = 1, data_type: str = "float32"):
        if not TRT_AVAILABLE:
            raise RuntimeError("TensorRT or PyCUDA not available. Install: pip install tensorrt pycuda")
        if data_type not in DATA_TYPES:
            raise UnsupportedConfigError(f"Unknown data type: {data_type}. Use one of {sorted(DATA_TYPES)}")
        if max_batch_size <= 0:
            raise ValueError(f"max_batch_size must be positive, got {max_batch_size}")

        self.max_batch_size = max_batch_size
        self.data_type = data_type
        self.network_inputs: List[NetworkInput] = []
        self.network_outputs: List[NetworkOutput] = []
        self.num_bindings = 0

        self.logger = trt_logger()
        self.engine = None
        self.context = None
        self.stream = None
        self._runtime = None
        self._engine_names: List[str] = []
        self._implicit_batch = False
        self._dynamic_batch = False
        self._gpu_buffers = None

    # ------------------------------------------------------------------
    # Bindings
    # ------------------------------------------------------------------

    def _check_unique(self, name: str):
        for tensor in self.network_inputs + self.network_outputs:
            if tensor.name == name:
                raise ValueError(f"Tensor {name} is already bound")
        if self.engine is not None:
            raise TensorRTError("Bindings must be registered before the engine is loaded")

    def add_input(self, layer_name: str, dims, ele_size: int):
        """
        Register an input of the network.

        Args:
            layer_name: Name of the input layer (e.g. "data")
            dims: Dimensions without batch, CHW for images. Ex: (3, 480, 640)
            ele_size: Size of each element in bytes
        """
        self._check_unique(layer_name)
        self.network_inputs.append(NetworkInput(layer_name, dims, ele_size, DATA_TYPES[self.data_type]))

    def add_output(self, layer_name: str, dims, ele_size: int):
        """
        Register an output of the network.

        Args:
            layer_name: Name of the output layer (e.g. "prob")
            dims: Dimensions without batch
            ele_size: Size of each element in bytes
        """
        self._check_unique(layer_name)
        self.network_outputs.append(NetworkOutput(layer_name, dims, ele_size, DATA_TYPES[self.data_type]))

    @property
    def bindings(self) -> List[NetworkIO]:
        return list(self.network_inputs) + list(self.network_outputs)

    # ------------------------------------------------------------------
    # Engine cache
    # ------------------------------------------------------------------

    def load_cache(self, cache_path: str, max_batch_size: int = 1):
        """
        Quick load a previously serialized engine.

        Args:
            cache_path: Path to the engine cache file
            max_batch_size: Max batch size the engine was built with. Changing it
                requires rebuilding the engine, not just passing a new value.

        Raises:
            ModelDeserializeError: cache missing, unreadable or incompatible
        """
        if not os.path.isfile(cache_path):
            raise ModelDeserializeError(f"Engine cache not found: {cache_path}")

        try:
            with open(cache_path, "rb") as f:
                engine_data = f.read()
        except OSError as e:
            raise ModelDeserializeError(f"Could not read engine cache {cache_path}: {e}")

        if not engine_data:
            raise ModelDeserializeError(f"Engine cache is empty: {cache_path}")

        runtime = trt.Runtime(self.logger)
        engine = runtime.deserialize_cuda_engine(engine_data)
        if engine is None:
            raise ModelDeserializeError(f"Failed to deserialize engine: {cache_path}")

        self._runtime = runtime
        self.max_batch_size = max_batch_size
        self._attach(engine)
        log.info("Loaded engine cache %s (max batch %d)", cache_path, self.max_batch_size)

    def save_cache(self, cache_path: str):
        """Serialize the loaded engine so later runs can use load_cache()."""
        if self.engine is None:
            raise TensorRTError("No engine loaded, nothing to save")

        plan = self.engine.serialize()
        if plan is None:
            raise TensorRTError("Engine serialization failed")

        path = Path(cache_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            f.write(memoryview(plan))
        log.info("Saved engine cache %s", path)

    def load_or_build(self, cache_path: str, build: Callable[[], None]) -> bool:
        """
        Load the engine from cache_path, building and caching it on a miss.

        Args:
            cache_path: Path to the engine cache file
            build: Callable that builds the engine (e.g. a bound load_model)

        Returns:
            True if the engine was built, False if it came from the cache
        """
        try:
            self.load_cache(cache_path, self.max_batch_size)
            return False
        except ModelDeserializeError as e:
            log.info("Engine cache unusable (%s), building network", e)

        build()
        self.save_cache(cache_path)
        return True

    def load_model(self, *args, **kwargs):
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def _create_builder_config(self, builder, max_network_size: int):
        config = builder.create_builder_config()
        if hasattr(config, "set_memory_pool_limit"):
            config.set_memory_pool_limit(trt.MemoryPoolType.WORKSPACE, max_network_size)
        else:
            config.max_workspace_size = max_network_size

        if self.data_type == "float16":
            if builder.platform_has_fast_fp16:
                config.set_flag(trt.BuilderFlag.FP16)
            else:
                log.warning("FP16 not supported on this platform, using FP32")
        elif self.data_type == "int8":
            if not builder.platform_has_fast_int8:
                raise UnsupportedConfigError("INT8 not supported on this platform")
            config.set_flag(trt.BuilderFlag.INT8)
        return config

    def _add_batch_profile(self, builder, network, config):
        """Optimization profile covering batch sizes 1..max_batch_size for dynamic inputs."""
        profile = None
        for i in range(network.num_inputs):
            tensor = network.get_input(i)
            shape = list(tensor.shape)
            if not shape or shape[0] != -1:
                continue
            if any(d < 0 for d in shape[1:]):
                raise UnsupportedConfigError(f"Only the batch dimension of {tensor.name} may be dynamic")
            if profile is None:
                profile = builder.create_optimization_profile()
            profile.set_shape(tensor.name,
                              tuple([1] + shape[1:]),
                              tuple([self.max_batch_size] + shape[1:]),
                              tuple([self.max_batch_size] + shape[1:]))
        if profile is not None:
            config.add_optimization_profile(profile)

    def _build(self, builder, network, max_batch_size: int, max_network_size: int):
        """Optimize a parsed network and attach the resulting engine."""
        self.max_batch_size = max_batch_size
        config = self._create_builder_config(builder, max_network_size)

        implicit = getattr(network, "has_implicit_batch_dimension", False)
        if implicit:
            builder.max_batch_size = max_batch_size
        else:
            self._add_batch_profile(builder, network, config)

        log.info("Building engine (max batch %d, %s, workspace %d bytes)",
                 max_batch_size, self.data_type, max_network_size)
        plan = builder.build_serialized_network(network, config)
        if plan is None:
            raise ModelBuildError("TensorRT could not build the network")

        runtime = trt.Runtime(self.logger)
        engine = runtime.deserialize_cuda_engine(plan)
        if engine is None:
            raise ModelBuildError("Built engine could not be deserialized")

        self._runtime = runtime
        self._attach(engine)

    # ------------------------------------------------------------------
    # Engine inspection
    # ------------------------------------------------------------------

    def _tensor_names(self, engine) -> List[str]:
        if hasattr(engine, "num_io_tensors"):
            return [engine.get_tensor_name(i) for i in range(engine.num_io_tensors)]
        return [engine.get_binding_name(i) for i in range(engine.num_bindings)]

    def _tensor_shape(self, engine, name: str):
        if hasattr(engine, "get_tensor_shape"):
            return tuple(int(d) for d in engine.get_tensor_shape(name))
        return tuple(int(d) for d in engine.get_binding_shape(engine.get_binding_index(name)))

    def _attach(self, engine):
        """Validate engine tensors against the registered bindings and create the context."""
        names = self._tensor_names(engine)
        registered = [t.name for t in self.bindings]
        if sorted(names) != sorted(registered):
            raise ModelDeserializeError(
                f"Engine tensors {names} do not match the registered bindings {registered}")

        implicit = bool(getattr(engine, "has_implicit_batch_dimension", False))
        dynamic = False
        for tensor in self.bindings:
            shape = self._tensor_shape(engine, tensor.name)
            dims = shape if implicit else shape[1:]
            if not implicit and shape and shape[0] == -1:
                dynamic = True
            if int(np.prod(dims)) != tensor.volume():
                raise ModelDeserializeError(
                    f"Engine shape {shape} of {tensor.name} does not match the bound dims {tensor.dims}")
            if not implicit and shape and shape[0] > 0 and shape[0] != self.max_batch_size:
                log.warning("Engine has a fixed batch of %d for %s, using it as max batch size",
                            shape[0], tensor.name)
                self.max_batch_size = shape[0]

        context = engine.create_execution_context()
        if context is None:
            raise TensorRTError("Failed to create execution context")

        self.release_buffers()
        self.engine = engine
        self.context = context
        self.stream = cuda.Stream()
        self._engine_names = names
        self._implicit_batch = implicit
        self._dynamic_batch = dynamic
        self.num_bindings = len(names)

    def engine_summary(self) -> str:
        """Returns a summary of the loaded network, inputs, and outputs."""
        lines = [f"{type(self).__name__}: {'loaded' if self.engine is not None else 'not loaded'}",
                 f"  Max batch size: {self.max_batch_size}",
                 f"  Data type: {self.data_type}",
                 f"  Bindings: {len(self.bindings)}"]
        for tensor in self.network_inputs:
            lines.append(f"  Input  {tensor.name}: dims={tensor.dims}, {tensor.size()} bytes")
        for tensor in self.network_outputs:
            lines.append(f"  Output {tensor.name}: dims={tensor.dims}, {tensor.size()} bytes")
        if self.engine is not None and hasattr(self.engine, "device_memory_size"):
            lines.append(f"  Device memory: {self.engine.device_memory_size} bytes")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Memory
    # ------------------------------------------------------------------

    def alloc_inputs(self, location: MemoryLocation, skip_malloc: bool = False) -> LocatedExecutionMemory:
        """
        Allocate a located execution memory structure for the inputs.

        Args:
            location: HOST, DEVICE or MAPPED
            skip_malloc: Create the structure but do not allocate memory
        """
        return allocate(location, self.network_inputs, self.max_batch_size, skip_malloc)

    def alloc_outputs(self, location: MemoryLocation, skip_malloc: bool = False) -> LocatedExecutionMemory:
        """
        Allocate a located execution memory structure for the outputs.

        Args:
            location: HOST, DEVICE or MAPPED
            skip_malloc: Create the structure but do not allocate memory
        """
        return allocate(location, self.network_outputs, self.max_batch_size, skip_malloc)

    def _alloc_gpu_buffers(self):
        """Contiguous device buffers, one per binding, sized for max_batch_size."""
        if self._gpu_buffers is not None:
            return
        buffers = []
        try:
            for tensor in self.bindings:
                nbytes = self.max_batch_size * tensor.volume() * tensor.dtype.itemsize
                buffers.append(cuda.mem_alloc(nbytes))
        except cuda.Error as e:
            for buf in buffers:
                buf.free()
            raise DeviceMemoryError(f"Could not allocate engine buffers: {e}")
        self._gpu_buffers = buffers

    def release_buffers(self):
        """Free the pre-allocated engine buffers."""
        if self._gpu_buffers is None:
            return
        for buf in self._gpu_buffers:
            buf.free()
        self._gpu_buffers = None

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def _validate(self, memory: LocatedExecutionMemory, tensors, batch_size: int, kind: str,
                  exact: bool = False):
        if memory.batch_size < batch_size:
            raise ValueError(f"{kind} hold {memory.batch_size} batch items, {batch_size} requested")
        for b in range(batch_size):
            if len(memory[b]) != len(tensors):
                raise ValueError(f"{kind}[{b}] has {len(memory[b])} entries, expected {len(tensors)}")
            for i, tensor in enumerate(tensors):
                entry = memory[b][i]
                if entry is None:
                    raise ValueError(f"{kind}[{b}][{i}] ({tensor.name}) is not allocated")
                if memory.location == MemoryLocation.DEVICE:
                    continue
                if np.asarray(entry).size != tensor.volume():
                    raise ValueError(f"{kind}[{b}][{i}] ({tensor.name}) has {np.asarray(entry).size} "
                                     f"elements, expected {tensor.volume()}")
                # Copied into directly, byte for byte
                if exact and not (isinstance(entry, np.ndarray) and entry.dtype == tensor.dtype
                                  and entry.flags.c_contiguous):
                    raise ValueError(f"{kind}[{b}][{i}] ({tensor.name}) must be a C-contiguous "
                                     f"{tensor.dtype} array, got {getattr(entry, 'dtype', type(entry).__name__)}")

    def predict(self, inputs: LocatedExecutionMemory, outputs: Optional[LocatedExecutionMemory] = None,
                batch_size: Optional[int] = None) -> LocatedExecutionMemory:
        """
        Run a forward pass of the loaded network.

        Args:
            inputs: Network inputs indexed by [batch_index][input_index]
            outputs: Destination indexed by [batch_index][output_index]. Host
                memory is allocated when omitted.
            batch_size: Number of batch items to run (defaults to inputs.batch_size)

        Returns:
            The outputs structure
        """
        if self.context is None:
            raise TensorRTError("No engine loaded. Call load_cache() or load_model() first")

        if batch_size is None:
            batch_size = inputs.batch_size
        if not 1 <= batch_size <= self.max_batch_size:
            raise ValueError(f"Batch size must be between 1 and {self.max_batch_size}, got {batch_size}")

        if outputs is None:
            outputs = self.alloc_outputs(MemoryLocation.HOST)
        self._validate(inputs, self.network_inputs, batch_size, "inputs")
        self._validate(outputs, self.network_outputs, batch_size, "outputs", exact=True)

        self._alloc_gpu_buffers()
        n_inputs = len(self.network_inputs)

        # Host arrays must stay alive until the stream is synchronized
        staged = []
        try:
            for i, tensor in enumerate(self.network_inputs):
                base = int(self._gpu_buffers[i])
                nbytes = tensor.volume() * tensor.dtype.itemsize
                for b in range(batch_size):
                    dst = base + b * nbytes
                    if inputs.location == MemoryLocation.HOST:
                        host = np.ascontiguousarray(inputs[b][i], dtype=tensor.dtype)
                        staged.append(host)
                        cuda.memcpy_htod_async(dst, host, self.stream)
                    else:
                        cuda.memcpy_dtod_async(dst, inputs.device_pointer(b, i), nbytes, self.stream)

            self._execute(batch_size)

            for j, tensor in enumerate(self.network_outputs):
                base = int(self._gpu_buffers[n_inputs + j])
                nbytes = tensor.volume() * tensor.dtype.itemsize
                for b in range(batch_size):
                    src = base + b * nbytes
                    if outputs.location == MemoryLocation.DEVICE:
                        cuda.memcpy_dtod_async(outputs.device_pointer(b, j), src, nbytes, self.stream)
                    else:
                        cuda.memcpy_dtoh_async(outputs[b][j], src, self.stream)

            self.stream.synchronize()
        except cuda.Error as e:
            raise DeviceMemoryError(f"CUDA transfer failed: {e}")

        return outputs

    def _execute(self, batch_size: int):
        pointers = {tensor.name: int(buf) for tensor, buf in zip(self.bindings, self._gpu_buffers)}
        stream_handle = self.stream.handle

        if self._implicit_batch:
            bindings = [pointers[name] for name in self._engine_names]
            ok = self.context.execute_async(batch_size=batch_size, bindings=bindings,
                                            stream_handle=stream_handle)
        else:
            if self._dynamic_batch:
                for tensor in self.network_inputs:
                    shape = binding_shape(tensor, batch_size)
                    if hasattr(self.context, "set_input_shape"):
                        self.context.set_input_shape(tensor.name, shape)
                    else:
                        self.context.set_binding_shape(self.engine.get_binding_index(tensor.name), shape)

            if hasattr(self.context, "execute_async_v3"):
                for name, ptr in pointers.items():
                    self.context.set_tensor_address(name, ptr)
                ok = self.context.execute_async_v3(stream_handle=stream_handle)
            else:
                bindings = [pointers[name] for name in self._engine_names]
                ok = self.context.execute_async_v2(bindings=bindings, stream_handle=stream_handle)

        if not ok:
            raise InferenceError(f"TensorRT execution failed for batch size {batch_size}")

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    def close(self):
        """Release device buffers and the engine. Safe to call more than once."""
        self.release_buffers()
        self.context = None
        self.engine = None
        self._runtime = None
        self.stream = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def describe_engine(engine_path: str) -> List[dict]:
    """
    Deserialize an engine file and list its I/O tensors.

    Returns:
        One dict per tensor with keys name, mode ("INPUT"/"OUTPUT"), shape, dtype
    """
    if not TRT_AVAILABLE:
        raise RuntimeError("TensorRT or PyCUDA not available. Install: pip install tensorrt pycuda")
    if not os.path.isfile(engine_path):
        raise FileNotFoundError(f"TensorRT engine not found: {engine_path}")

    with open(engine_path, "rb") as f:
        runtime = trt.Runtime(trt_logger())
        engine = runtime.deserialize_cuda_engine(f.read())
    if engine is None:
        raise ModelDeserializeError(f"Failed to deserialize engine: {engine_path}")

    tensors = []
    if hasattr(engine, "num_io_tensors"):
        for i in range(engine.num_io_tensors):
            name = engine.get_tensor_name(i)
            is_input = engine.get_tensor_mode(name) == trt.TensorIOMode.INPUT
            tensors.append({"name": name,
                            "mode": "INPUT" if is_input else "OUTPUT",
                            "shape": tuple(engine.get_tensor_shape(name)),
                            "dtype": str(engine.get_tensor_dtype(name))})
    else:
        for i in range(engine.num_bindings):
            tensors.append({"name": engine.get_binding_name(i),
                            "mode": "INPUT" if engine.binding_is_input(i) else "OUTPUT",
                            "shape": tuple(engine.get_binding_shape(i)),
                            "dtype": str(engine.get_binding_dtype(i))})
    return tensors
