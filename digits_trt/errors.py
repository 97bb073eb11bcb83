"""
Exceptions raised while loading, building and running TensorRT engines.
"""


class TensorRTError(RuntimeError):
    """Base class for all engine lifecycle errors."""


class ModelDeserializeError(TensorRTError):
    """A cached engine is missing, unreadable or was built for another platform."""


class ModelBuildError(TensorRTError):
    """The network definition could not be parsed or optimized."""


class HostMemoryError(TensorRTError):
    """Host (or mapped) memory could not be allocated."""


class DeviceMemoryError(TensorRTError):
    """Device memory could not be allocated or copied."""


class UnsupportedConfigError(TensorRTError):
    """The requested precision, parser or batch configuration is not available."""


class InferenceError(TensorRTError):
    """The forward pass was rejected by the execution context."""
