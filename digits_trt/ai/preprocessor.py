"""
ImageNet-style preprocessing for DIGITS networks.

Images arrive as float RGBA (H, W, 4) or NV12 bytes and leave as planar
float32 tensors resized to the network input, with the mean image subtracted.
"""

from typing import Sequence, Tuple

import cv2
import numpy as np


class ImageNetPreprocessor:
    """
    Converts camera/host images to network input tensors.
    """

    def __init__(self, mean: Sequence[float] = (0.0, 0.0, 0.0)):
        """
        Args:
            mean: Per-channel mean in BGR order, subtracted after resizing.
                Greyscale input subtracts the luminance of this mean pixel.
        """
        mean = tuple(float(m) for m in mean)
        if len(mean) != 3:
            raise ValueError(f"Mean must have 3 values (B, G, R), got {mean}")
        self.mean = np.array(mean, dtype=np.float32)
        # Single-channel networks: the mean pixel through the same grey conversion
        self.grey_mean = float(cv2.cvtColor(self.mean.reshape(1, 1, 3), cv2.COLOR_BGR2GRAY)[0, 0])

    @staticmethod
    def _check_rgba(rgba: np.ndarray, width: int, height: int) -> np.ndarray:
        rgba = np.asarray(rgba, dtype=np.float32)
        if rgba.size != width * height * 4:
            raise ValueError(f"RGBA image has {rgba.size} values, expected {width}x{height}x4")
        return rgba.reshape(height, width, 4)

    def rgba_to_bgr(self, rgba: np.ndarray, width: int, height: int,
                    model_width: int, model_height: int) -> np.ndarray:
        """
        Float RGBA image to planar BGR (3, model_height, model_width).

        Args:
            rgba: Float RGBA pixels, (H, W, 4) or flat
            width: Width of the image in pixels
            height: Height of the image in pixels
            model_width: Network input width
            model_height: Network input height
        """
        rgba = self._check_rgba(rgba, width, height)
        if (width, height) != (model_width, model_height):
            rgba = cv2.resize(rgba, (model_width, model_height), interpolation=cv2.INTER_LINEAR)
        bgr = rgba[:, :, 2::-1] - self.mean
        return np.ascontiguousarray(np.transpose(bgr, (2, 0, 1)), dtype=np.float32)

    def rgba_to_grey(self, rgba: np.ndarray, width: int, height: int,
                     model_width: int, model_height: int) -> np.ndarray:
        """Float RGBA image to a single plane (1, model_height, model_width)."""
        rgba = self._check_rgba(rgba, width, height)
        grey = cv2.cvtColor(rgba, cv2.COLOR_RGBA2GRAY)
        if (width, height) != (model_width, model_height):
            grey = cv2.resize(grey, (model_width, model_height), interpolation=cv2.INTER_LINEAR)
        grey = grey - self.grey_mean
        return np.ascontiguousarray(grey[np.newaxis, :, :], dtype=np.float32)

    @staticmethod
    def nv12_to_rgba(nv12: np.ndarray, width: int, height: int) -> np.ndarray:
        """
        NV12 (Y plane followed by interleaved UV at half resolution) to float RGBA.

        Returns:
            Float32 RGBA image (height, width, 4) with values in [0, 255]
        """
        if width % 2 or height % 2:
            raise ValueError(f"NV12 dimensions must be even, got {width}x{height}")
        nv12 = np.frombuffer(nv12, dtype=np.uint8) if isinstance(nv12, (bytes, bytearray)) \
            else np.asarray(nv12, dtype=np.uint8)
        expected = width * height * 3 // 2
        if nv12.size != expected:
            raise ValueError(f"NV12 image has {nv12.size} bytes, expected {expected}")
        yuv = nv12.reshape(height * 3 // 2, width)
        rgba = cv2.cvtColor(yuv, cv2.COLOR_YUV2RGBA_NV12)
        return rgba.astype(np.float32)

    @staticmethod
    def bgr_to_rgba(image: np.ndarray) -> Tuple[np.ndarray, int, int]:
        """
        OpenCV BGR image (as read by cv2.imread) to float RGBA.

        Returns:
            (rgba, width, height)
        """
        if image is None or image.ndim != 3 or image.shape[2] != 3:
            raise ValueError("Expected a BGR image (H, W, 3)")
        height, width = image.shape[:2]
        rgba = cv2.cvtColor(image, cv2.COLOR_BGR2RGBA).astype(np.float32)
        return rgba, width, height
