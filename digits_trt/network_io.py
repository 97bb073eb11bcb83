"""
Network I/O bookkeeping

Bound tensors (name, CHW dims, element size) and the batch-major memory
container used to pass them to and from a TensorRT engine.
"""

from enum import Enum
from typing import List, Sequence, Tuple

import numpy as np

from digits_trt.errors import DeviceMemoryError, HostMemoryError

try:
    import pycuda.driver as cuda
    CUDA_AVAILABLE = True
except ImportError:
    cuda = None
    CUDA_AVAILABLE = False


# Supported engine precisions and the numpy type used for their bindings.
# Reduced precision engines still take float32 bindings.
DATA_TYPES = {
    "float32": np.float32,
    "float16": np.float32,
    "int8": np.float32,
}


class NetworkIO:
    """A named tensor bound to the network, without the batch dimension."""

    def __init__(self, name: str, dims: Sequence[int], ele_size: int, dtype=np.float32):
        if not name:
            raise ValueError("Tensor name must not be empty")
        dims = tuple(int(d) for d in dims)
        if len(dims) == 0 or any(d <= 0 for d in dims):
            raise ValueError(f"Dimensions of {name} must be positive, got {dims}")
        if ele_size <= 0:
            raise ValueError(f"Element size of {name} must be positive, got {ele_size}")

        self.name = name
        self.dims = dims
        self.ele_size = int(ele_size)
        self.dtype = np.dtype(dtype)

    def volume(self) -> int:
        """Number of elements for a single batch item."""
        return int(np.prod(self.dims))

    def size(self) -> int:
        """Size in bytes for a single batch item."""
        return self.volume() * self.ele_size

    def __repr__(self):
        return f"{type(self).__name__}(name={self.name!r}, dims={self.dims}, ele_size={self.ele_size})"


class NetworkInput(NetworkIO):
    pass


class NetworkOutput(NetworkIO):
    pass


class MemoryLocation(Enum):
    HOST = "host"
    DEVICE = "device"
    MAPPED = "mapped"


class LocatedExecutionMemory:
    """
    Inputs or outputs of a forward pass indexed by [batch_index][io_index].

    HOST entries are numpy arrays, DEVICE entries are PyCUDA device
    allocations and MAPPED entries are page-locked numpy arrays that the
    device can address directly.
    """

    def __init__(self, location: MemoryLocation, batch: List[list]):
        self.location = MemoryLocation(location)
        self.batch = batch

    @property
    def batch_size(self) -> int:
        return len(self.batch)

    def __len__(self):
        return len(self.batch)

    def __getitem__(self, index):
        return self.batch[index]

    def __iter__(self):
        return iter(self.batch)

    def device_pointer(self, batch_index: int, io_index: int) -> int:
        """Return the device address of an entry (DEVICE or MAPPED only)."""
        entry = self.batch[batch_index][io_index]
        if entry is None:
            raise ValueError(f"Entry [{batch_index}][{io_index}] is not allocated")
        if self.location == MemoryLocation.DEVICE:
            return int(entry)
        if self.location == MemoryLocation.MAPPED:
            return int(entry.base.get_device_pointer())
        raise ValueError("Host memory has no device pointer")

    def free(self) -> None:
        """Release device allocations and drop references to host buffers."""
        if self.location == MemoryLocation.DEVICE:
            for item in self.batch:
                for entry in item:
                    if entry is not None:
                        entry.free()
        self.batch = []


def _require_cuda():
    if not CUDA_AVAILABLE:
        raise RuntimeError("PyCUDA not available. Install: pip install pycuda")


def allocate(location: MemoryLocation, tensors: Sequence[NetworkIO], batch_size: int,
             skip_malloc: bool = False) -> LocatedExecutionMemory:
    """
    Allocate one buffer per bound tensor for each batch index.

    Args:
        location: Where the buffers should live
        tensors: Bound inputs or outputs, in binding order
        batch_size: Number of batch items
        skip_malloc: Build the structure with None entries only

    Returns:
        LocatedExecutionMemory of shape [batch_size][len(tensors)]
    """
    location = MemoryLocation(location)
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")

    batch = []
    for _ in range(batch_size):
        item = []
        for tensor in tensors:
            if skip_malloc:
                item.append(None)
            elif location == MemoryLocation.HOST:
                try:
                    item.append(np.zeros(tensor.dims, dtype=tensor.dtype))
                except MemoryError as e:
                    raise HostMemoryError(f"Could not allocate host memory for {tensor.name}: {e}")
            elif location == MemoryLocation.MAPPED:
                _require_cuda()
                try:
                    item.append(cuda.pagelocked_zeros(tensor.dims, tensor.dtype,
                                                      mem_flags=cuda.host_alloc_flags.DEVICEMAP))
                except cuda.Error as e:
                    raise HostMemoryError(f"Could not allocate mapped memory for {tensor.name}: {e}")
            else:
                _require_cuda()
                try:
                    item.append(cuda.mem_alloc(tensor.volume() * tensor.dtype.itemsize))
                except cuda.Error as e:
                    LocatedExecutionMemory(location, batch + [item]).free()
                    raise DeviceMemoryError(f"Could not allocate device memory for {tensor.name}: {e}")
        batch.append(item)

    return LocatedExecutionMemory(location, batch)


def binding_shape(tensor: NetworkIO, batch_size: int) -> Tuple[int, ...]:
    """Full binding shape with the batch dimension in front."""
    return (batch_size,) + tensor.dims
