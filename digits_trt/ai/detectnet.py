"""
DetectNet output decoding

DetectNet predicts, for every cell of a grid laid over the input, a coverage
value per class and a bounding box (x1, y1, x2, y2) relative to the cell's
top-left corner. Cells above the coverage threshold propose a rectangle;
proposals are clustered with OpenCV's groupRectangles.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np


@dataclass
class ClassRectangle:
    """A classified region of an image, in pixels of the original image."""
    id: int
    confidence: float
    x: int
    y: int
    w: int
    h: int

    def to_xyxy(self) -> Tuple[int, int, int, int]:
        return self.x, self.y, self.x + self.w, self.y + self.h


@dataclass
class ClusterParams:
    """
    Clustering parameters, defaults from the DIGITS DetectNet cluster layer.

    Attributes:
        coverage_threshold: Minimum coverage for a cell to propose a box
        group_threshold: Clusters with this many proposals or fewer are dropped
        eps: Relative difference between sides for rectangles to be merged
        min_height: Minimum cluster height in network input pixels
        stride: Input pixels per grid cell
    """
    coverage_threshold: float = 0.6
    group_threshold: int = 3
    eps: float = 0.02
    min_height: int = 22
    stride: int = 16

    def __post_init__(self):
        if not 0.0 <= self.coverage_threshold <= 1.0:
            raise ValueError(f"coverage_threshold must be in [0, 1], got {self.coverage_threshold}")
        if self.group_threshold < 0:
            raise ValueError(f"group_threshold must not be negative, got {self.group_threshold}")
        if self.eps < 0:
            raise ValueError(f"eps must not be negative, got {self.eps}")
        if self.stride <= 0:
            raise ValueError(f"stride must be positive, got {self.stride}")


def _similar(rects: np.ndarray, rect, eps: float) -> np.ndarray:
    """Mask of proposals OpenCV would consider equivalent to rect."""
    x, y, w, h = rect
    delta = eps * (np.minimum(rects[:, 2], w) + np.minimum(rects[:, 3], h)) * 0.5
    return ((np.abs(rects[:, 0] - x) <= delta) &
            (np.abs(rects[:, 1] - y) <= delta) &
            (np.abs(rects[:, 0] + rects[:, 2] - x - w) <= delta) &
            (np.abs(rects[:, 1] + rects[:, 3] - y - h) <= delta))


def _proposals(coverage: np.ndarray, boxes: np.ndarray, threshold: float,
               cell_w: float, cell_h: float) -> Tuple[np.ndarray, np.ndarray]:
    """Rectangles (x, y, w, h) and coverage of every cell above threshold."""
    rows, cols = np.nonzero(coverage >= threshold)
    if rows.size == 0:
        return np.zeros((0, 4), dtype=np.int32), np.zeros(0, dtype=np.float32)

    mx = cols * cell_w
    my = rows * cell_h
    x1 = boxes[0, rows, cols] + mx
    y1 = boxes[1, rows, cols] + my
    x2 = boxes[2, rows, cols] + mx
    y2 = boxes[3, rows, cols] + my

    rects = np.round(np.stack([x1, y1, x2 - x1, y2 - y1], axis=1)).astype(np.int32)
    scores = coverage[rows, cols].astype(np.float32)

    valid = (rects[:, 2] > 0) & (rects[:, 3] > 0)
    return rects[valid], scores[valid]


def decode_detections(coverage: np.ndarray, bboxes: np.ndarray, model_size: Tuple[int, int],
                      image_size: Tuple[int, int],
                      params: Optional[ClusterParams] = None) -> List[ClassRectangle]:
    """
    Decode DetectNet coverage/bbox tensors into rectangles.

    Args:
        coverage: (classes, grid_h, grid_w) coverage, or (grid_h, grid_w) for one class
        bboxes: (4, grid_h, grid_w) shared by all classes, or (4 * classes, grid_h, grid_w)
        model_size: Network input size (width, height)
        image_size: Size of the image the detections are reported in (width, height)
        params: Clustering parameters

    Returns:
        Rectangles sorted by descending confidence
    """
    params = params or ClusterParams()
    coverage = np.asarray(coverage, dtype=np.float32)
    bboxes = np.asarray(bboxes, dtype=np.float32)
    if coverage.ndim == 2:
        coverage = coverage[np.newaxis]
    if coverage.ndim != 3 or bboxes.ndim != 3:
        raise ValueError(f"Unexpected tensor ranks: coverage {coverage.shape}, bboxes {bboxes.shape}")

    nb_classes, grid_h, grid_w = coverage.shape
    if bboxes.shape[1:] != (grid_h, grid_w):
        raise ValueError(f"bboxes grid {bboxes.shape[1:]} does not match coverage grid {(grid_h, grid_w)}")
    per_class = bboxes.shape[0] == 4 * nb_classes and nb_classes > 1
    if bboxes.shape[0] != 4 and not per_class:
        raise ValueError(f"bboxes must have 4 or {4 * nb_classes} planes, got {bboxes.shape[0]}")

    model_w, model_h = model_size
    image_w, image_h = image_size
    cell_w = model_w / grid_w
    cell_h = model_h / grid_h
    scale_x = image_w / model_w
    scale_y = image_h / model_h

    results = []
    for cls in range(nb_classes):
        boxes = bboxes[4 * cls:4 * cls + 4] if per_class else bboxes
        rects, scores = _proposals(coverage[cls], boxes, params.coverage_threshold, cell_w, cell_h)
        if len(rects) == 0:
            continue

        grouped, _ = cv2.groupRectangles(rects.tolist(), params.group_threshold, params.eps)
        for rect in grouped:
            x, y, w, h = (int(v) for v in rect)
            if h < params.min_height:
                continue

            members = _similar(rects, (x, y, w, h), params.eps)
            confidence = float(scores[members].mean()) if members.any() else float(scores.max())

            x1 = min(max(int(round(x * scale_x)), 0), image_w - 1)
            y1 = min(max(int(round(y * scale_y)), 0), image_h - 1)
            x2 = min(max(int(round((x + w) * scale_x)), 0), image_w)
            y2 = min(max(int(round((y + h) * scale_y)), 0), image_h)
            if x2 <= x1 or y2 <= y1:
                continue

            results.append(ClassRectangle(id=cls, confidence=confidence,
                                          x=x1, y=y1, w=x2 - x1, h=y2 - y1))

    results.sort(key=lambda r: r.confidence, reverse=True)
    return results


def draw_detections(image: np.ndarray, detections: List[ClassRectangle], labels=None) -> np.ndarray:
    """Return a copy of a BGR image with the detections drawn on it."""
    annotated = image.copy()
    for det in detections:
        x1, y1, x2, y2 = det.to_xyxy()
        name = labels[det.id] if labels and det.id < len(labels) else str(det.id)
        cv2.rectangle(annotated, (x1, y1), (x2, y2), (0, 255, 0), 2)
        cv2.putText(annotated, f"{name} {det.confidence:.2f}", (x1, max(y1 - 10, 0)),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 255, 0), 2)
    return annotated
