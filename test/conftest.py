"""
Pytest Configuration and Fixtures

TensorRT and PyCUDA are replaced by small fakes so the engine lifecycle,
memory staging and post-processing can be tested without a GPU:
- FakeGPU: a flat bytearray standing in for device memory
- FakeEngine / FakeContext: an engine whose "network" is a Python callable
- FakeHostAllocation: mapped host memory sharing FakeGPU bytes
"""

from unittest.mock import MagicMock, patch

import numpy as np
import pytest

import digits_trt.ai.caffe_engine as caffe_engine_module
import digits_trt.ai.engine as engine_module
import digits_trt.ai.onnx_engine as onnx_engine_module
import digits_trt.network_io as network_io_module


class FakeCudaError(Exception):
    pass


class FakeDeviceAllocation:
    def __init__(self, gpu, ptr, nbytes):
        self.gpu = gpu
        self.ptr = ptr
        self.nbytes = nbytes
        self.freed = False

    def __int__(self):
        return self.ptr

    def free(self):
        self.freed = True


class FakeHostAllocation:
    """Mapped host memory; arrays built on it share FakeGPU's bytes."""

    def __init__(self, gpu, shape, dtype):
        dtype = np.dtype(dtype)
        self.device = gpu.mem_alloc(int(np.prod(shape)) * dtype.itemsize)
        self._view = np.frombuffer(gpu.memory, dtype=np.uint8)
        address = self._view.ctypes.data + gpu._offset(self.device)
        self.__array_interface__ = {
            "shape": tuple(shape),
            "typestr": dtype.str,
            "data": (address, False),
            "version": 3,
        }

    def get_device_pointer(self):
        return int(self.device)


class FakeGPU:
    """Device memory as one bytearray; addresses start at BASE."""

    BASE = 0x1000

    def __init__(self, size=1 << 20):
        self.memory = bytearray(size)
        self.next_ptr = self.BASE
        self.allocations = []

    def mem_alloc(self, nbytes):
        alloc = FakeDeviceAllocation(self, self.next_ptr, int(nbytes))
        self.next_ptr += int(nbytes) + 256
        self.allocations.append(alloc)
        return alloc

    def _offset(self, ptr):
        return int(ptr) - self.BASE

    def read(self, ptr, nbytes):
        off = self._offset(ptr)
        return bytes(self.memory[off:off + nbytes])

    def write(self, ptr, data):
        off = self._offset(ptr)
        self.memory[off:off + len(data)] = data

    def read_array(self, ptr, count, dtype=np.float32):
        return np.frombuffer(self.read(ptr, count * np.dtype(dtype).itemsize), dtype=dtype).copy()

    def write_array(self, ptr, array):
        self.write(ptr, np.ascontiguousarray(array, dtype=np.float32).tobytes())

    def memcpy_htod_async(self, dst, host, stream=None):
        self.write(dst, np.ascontiguousarray(host).tobytes())

    def memcpy_dtoh_async(self, host, src, stream=None):
        data = self.read(src, host.nbytes)
        host[...] = np.frombuffer(data, dtype=host.dtype).reshape(host.shape)

    def memcpy_dtod_async(self, dst, src, nbytes, stream=None):
        self.write(dst, self.read(src, nbytes))

    def pagelocked_zeros(self, shape, dtype, mem_flags=0):
        array = np.asarray(FakeHostAllocation(self, shape, dtype))
        array[...] = 0
        return array


class FakeContext:
    """Execution context running `kernel(gpu, addresses, batch_size)` on execute."""

    def __init__(self, engine):
        self.engine = engine
        self.addresses = {}
        self.input_shapes = {}
        self.executions = 0

    def set_input_shape(self, name, shape):
        self.input_shapes[name] = tuple(shape)
        return True

    def set_tensor_address(self, name, ptr):
        self.addresses[name] = int(ptr)
        return True

    def execute_async_v3(self, stream_handle=None):
        self.executions += 1
        if self.engine.dynamic:
            batch_size = next(iter(self.input_shapes.values()))[0]
        else:
            batch_size = self.engine.shapes[self.engine.names[0]][0]
        if self.engine.kernel is not None:
            self.engine.kernel(self.engine.gpu, self.addresses, batch_size)
        return self.engine.succeed


class FakeImplicitContext:
    """Implicit batch context: bindings are passed positionally to execute_async."""

    def __init__(self, engine):
        self.engine = engine
        self.batch_sizes = []

    def execute_async(self, batch_size=1, bindings=None, stream_handle=None):
        self.batch_sizes.append(batch_size)
        addresses = dict(zip(self.engine.names, bindings))
        if self.engine.kernel is not None:
            self.engine.kernel(self.engine.gpu, addresses, batch_size)
        return self.engine.succeed


class FakeEngine:
    """
    Engine with named tensors.

    Explicit batch shapes get a leading batch dimension (-1 when dynamic);
    implicit batch shapes are the per-item dims, as TensorRT reports them.
    """

    def __init__(self, shapes, gpu=None, kernel=None, dynamic=True, plan=b"serialized-plan",
                 implicit=False):
        self.names = list(shapes)
        self.dynamic = dynamic and not implicit
        prefix = (-1,) if self.dynamic else ()
        self.shapes = {name: prefix + tuple(shape) for name, shape in shapes.items()}
        self.gpu = gpu
        self.kernel = kernel
        self.plan = plan
        self.succeed = True
        self.has_implicit_batch_dimension = implicit
        self.device_memory_size = 4096
        self.contexts = []

    @property
    def num_io_tensors(self):
        return len(self.names)

    def get_tensor_name(self, i):
        return self.names[i]

    def get_tensor_shape(self, name):
        return self.shapes[name]

    def create_execution_context(self):
        context = FakeImplicitContext(self) if self.has_implicit_batch_dimension else FakeContext(self)
        self.contexts.append(context)
        return context

    def serialize(self):
        return self.plan


@pytest.fixture
def fake_gpu():
    return FakeGPU()


@pytest.fixture
def mock_cuda(fake_gpu):
    """PyCUDA driver module backed by FakeGPU."""
    cuda = MagicMock()
    cuda.Error = FakeCudaError
    cuda.mem_alloc.side_effect = fake_gpu.mem_alloc
    cuda.memcpy_htod_async.side_effect = fake_gpu.memcpy_htod_async
    cuda.memcpy_dtoh_async.side_effect = fake_gpu.memcpy_dtoh_async
    cuda.memcpy_dtod_async.side_effect = fake_gpu.memcpy_dtod_async
    cuda.pagelocked_zeros.side_effect = fake_gpu.pagelocked_zeros
    cuda.Stream.return_value = MagicMock(handle=7)
    return cuda


@pytest.fixture
def mock_trt():
    """TensorRT module with a Runtime whose deserializer is configurable per test."""
    trt = MagicMock()
    trt.__version__ = "8.6.1"
    trt.Runtime.return_value.deserialize_cuda_engine.return_value = None
    return trt


@pytest.fixture
def trt_env(mock_trt, mock_cuda):
    """Patch TensorRT and PyCUDA everywhere the package looks them up."""
    with patch.object(engine_module, "trt", mock_trt), \
         patch.object(engine_module, "cuda", mock_cuda), \
         patch.object(engine_module, "TRT_AVAILABLE", True), \
         patch.object(engine_module, "trt_logger", MagicMock(return_value=MagicMock())), \
         patch.object(caffe_engine_module, "trt", mock_trt), \
         patch.object(onnx_engine_module, "trt", mock_trt), \
         patch.object(network_io_module, "cuda", mock_cuda), \
         patch.object(network_io_module, "CUDA_AVAILABLE", True):
        yield mock_trt


@pytest.fixture
def cache_file(tmp_path):
    """An engine cache file containing a dummy plan."""
    path = tmp_path / "model.tensorcache"
    path.write_bytes(b"cached-plan")
    return path
