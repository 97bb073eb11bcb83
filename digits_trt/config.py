"""
Model configuration

Models are described in a YAML file:

    globals:
      cache_dir: models/cache
    models:
      pednet:
        kind: detector
        prototxt: models/pednet/deploy.prototxt
        model: models/pednet/snapshot.caffemodel
        width: 1024
        height: 512
        classes: 1
        data_type: float16
        labels: [pedestrian]
        cluster:
          coverage_threshold: 0.6

Relative paths are resolved against the directory holding the YAML file.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from digits_trt.ai.classifier import DIGITSClassifier
from digits_trt.ai.detectnet import ClusterParams
from digits_trt.ai.detector import DIGITSDetector
from digits_trt.network_io import DATA_TYPES

KINDS = ("classifier", "detector")


@dataclass
class ModelConfig:
    name: str
    kind: str
    prototxt: str
    model: str
    cache: str
    channels: int = 3
    width: int = 224
    height: int = 224
    classes: int = 1
    max_batch_size: int = 1
    mean: List[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    data_type: str = "float32"
    max_network_size: int = 1 << 30
    labels: List[str] = field(default_factory=list)
    cluster: ClusterParams = field(default_factory=ClusterParams)

    def __post_init__(self):
        if self.kind not in KINDS:
            raise ValueError(f"Model {self.name}: unknown kind {self.kind!r}, use one of {KINDS}")
        if self.data_type not in DATA_TYPES:
            raise ValueError(f"Model {self.name}: unknown data_type {self.data_type!r}")
        if len(self.mean) != 3:
            raise ValueError(f"Model {self.name}: mean must have 3 values")
        if self.labels and len(self.labels) != self.classes:
            raise ValueError(f"Model {self.name}: {len(self.labels)} labels for {self.classes} classes")

    def label(self, class_id: int) -> str:
        if 0 <= class_id < len(self.labels):
            return self.labels[class_id]
        return str(class_id)


def _resolve(base: Path, path: Optional[str]) -> Optional[str]:
    if path is None:
        return None
    path = os.path.expanduser(str(path))
    return path if os.path.isabs(path) else str(base / path)


def parse_config(data: Dict, base_dir: str = ".") -> Dict[str, ModelConfig]:
    """Build ModelConfig objects from an already loaded YAML mapping."""
    base = Path(base_dir)
    data = data or {}
    globals_cfg = data.get("globals", {}) or {}
    cache_dir = _resolve(base, globals_cfg.get("cache_dir", "."))

    models = {}
    for name, entry in (data.get("models", {}) or {}).items():
        entry = dict(entry or {})
        for key in ("kind", "prototxt", "model"):
            if entry.get(key) is None:
                raise ValueError(f"Model {name}: missing required key {key!r}")

        cache = entry.pop("cache", None) or f"{name}.tensorcache"
        cache = os.path.expanduser(str(cache))
        cache = cache if os.path.isabs(cache) else os.path.join(cache_dir, cache)
        unknown = set(entry) - (set(ModelConfig.__dataclass_fields__) - {"name"})
        if unknown:
            raise ValueError(f"Model {name}: unknown keys {sorted(unknown)}")
        cluster = ClusterParams(**(entry.pop("cluster", {}) or {}))

        models[name] = ModelConfig(
            name=name,
            kind=entry.pop("kind"),
            prototxt=_resolve(base, entry.pop("prototxt")),
            model=_resolve(base, entry.pop("model")),
            cache=cache,
            cluster=cluster,
            **entry,
        )
    return models


def load_config(config_path: str) -> Dict[str, ModelConfig]:
    """Load configuration from YAML file."""
    with open(config_path, "r") as f:
        data = yaml.safe_load(f)
    return parse_config(data, os.path.dirname(os.path.abspath(config_path)))


def build_model(config: ModelConfig):
    """Construct the classifier or detector described by config."""
    kwargs = dict(
        prototxt_path=config.prototxt,
        model_path=config.model,
        cache_path=config.cache,
        nb_channels=config.channels,
        width=config.width,
        height=config.height,
        nb_classes=config.classes,
        max_batch_size=config.max_batch_size,
        image_net_mean=tuple(config.mean),
        data_type=config.data_type,
        max_network_size=config.max_network_size,
    )
    if config.kind == "detector":
        return DIGITSDetector(cluster_params=config.cluster, **kwargs)
    return DIGITSClassifier(**kwargs)
