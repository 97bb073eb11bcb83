"""
Command line entry point

    digits-trt inspect models/cache/pednet.tensorcache
    digits-trt build --onnx googlenet.onnx --input data:3x224x224 --output prob:1000 \
        --cache models/cache/googlenet.tensorcache --data-type float16
    digits-trt classify --config config/models.yaml --model googlenet image.jpg
    digits-trt detect --config config/models.yaml --model pednet --output-dir out/ image.jpg
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import cv2
from dotenv import load_dotenv

from digits_trt.ai.classifier import top_k
from digits_trt.ai.detectnet import draw_detections
from digits_trt.ai.engine import describe_engine
from digits_trt.ai.onnx_engine import OnnxRTEngine
from digits_trt.ai.preprocessor import ImageNetPreprocessor
from digits_trt.app_logger import get_logger, setup_logging
from digits_trt.config import build_model, load_config
from digits_trt.errors import TensorRTError
from digits_trt.network_io import DATA_TYPES

log = get_logger(__name__)


def parse_binding(text: str) -> Tuple[str, Tuple[int, ...]]:
    """Parse "name:CxHxW" into ("name", (C, H, W))."""
    name, sep, dims = text.rpartition(":")
    if not sep or not name or not dims:
        raise argparse.ArgumentTypeError(f"Expected name:DIMS (e.g. data:3x224x224), got {text!r}")
    try:
        shape = tuple(int(d) for d in dims.lower().split("x"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid dimensions in {text!r}")
    if any(d <= 0 for d in shape):
        raise argparse.ArgumentTypeError(f"Dimensions must be positive in {text!r}")
    return name, shape


def _read_image(path: str):
    image = cv2.imread(path)
    if image is None:
        raise FileNotFoundError(f"Could not read image: {path}")
    return image


def cmd_inspect(args) -> int:
    tensors = describe_engine(args.engine)
    log.info("Engine %s: %d I/O tensors", args.engine, len(tensors))
    for i, tensor in enumerate(tensors):
        print(f"[{i}] {tensor['name']}: {tensor['mode']}, shape={tensor['shape']}, dtype={tensor['dtype']}")
    return 0


def cmd_build(args) -> int:
    with OnnxRTEngine(max_batch_size=args.max_batch_size, data_type=args.data_type) as engine:
        for name, dims in args.inputs:
            engine.add_input(name, dims, 4)
        for name, dims in args.outputs:
            engine.add_output(name, dims, 4)
        engine.load_model(args.onnx, args.max_batch_size, args.workspace)
        engine.save_cache(args.cache)
        print(engine.engine_summary())
    return 0


def cmd_classify(args) -> int:
    config = load_config(args.config)[args.model]
    if config.kind != "classifier":
        raise ValueError(f"Model {args.model} is a {config.kind}, not a classifier")

    with build_model(config) as classifier:
        for path in args.images:
            rgba, width, height = ImageNetPreprocessor.bgr_to_rgba(_read_image(path))
            probabilities = classifier.classify_rgba(rgba, width, height)
            ranked = ", ".join(f"{config.label(i)}={p:.3f}" for i, p in top_k(probabilities, args.top))
            print(f"{path}: {ranked}")
    return 0


def cmd_detect(args) -> int:
    config = load_config(args.config)[args.model]
    if config.kind != "detector":
        raise ValueError(f"Model {args.model} is a {config.kind}, not a detector")

    if args.output_dir:
        Path(args.output_dir).mkdir(parents=True, exist_ok=True)

    with build_model(config) as detector:
        for path in args.images:
            image = _read_image(path)
            rgba, width, height = ImageNetPreprocessor.bgr_to_rgba(image)
            detections = detector.detect_rgba(rgba, width, height)
            print(f"{path}: {len(detections)} detections")
            for det in detections:
                print(f"  {config.label(det.id)} {det.confidence:.3f} x={det.x} y={det.y} w={det.w} h={det.h}")
            if args.output_dir:
                out_path = os.path.join(args.output_dir, os.path.basename(path))
                cv2.imwrite(out_path, draw_detections(image, detections, config.labels))
                log.info("Wrote %s", out_path)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="digits-trt",
                                     description="Run DIGITS classification and detection networks with TensorRT")
    parser.add_argument("--log-dir", default=None, help="Base directory for logs (default: $DIGITS_TRT_DATA or data)")
    parser.add_argument("--verbose", action="store_true", help="Log TensorRT debug output")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("inspect", help="List the I/O tensors of a serialized engine")
    p.add_argument("engine")
    p.set_defaults(func=cmd_inspect)

    p = sub.add_parser("build", help="Build an engine cache from an ONNX export")
    p.add_argument("--onnx", required=True)
    p.add_argument("--input", dest="inputs", action="append", type=parse_binding, required=True,
                   help="Input binding as name:CxHxW (repeatable)")
    p.add_argument("--output", dest="outputs", action="append", type=parse_binding, required=True,
                   help="Output binding as name:DIMS (repeatable)")
    p.add_argument("--cache", required=True, help="Engine cache file to write")
    p.add_argument("--max-batch-size", type=int, default=1)
    p.add_argument("--data-type", choices=sorted(DATA_TYPES), default="float32")
    p.add_argument("--workspace", type=int, default=1 << 30, help="Builder workspace in bytes")
    p.set_defaults(func=cmd_build)

    default_config = os.environ.get("DIGITS_TRT_CONFIG", "config/models.yaml")
    for name, func, help_text in (("classify", cmd_classify, "Classify images"),
                                  ("detect", cmd_detect, "Detect objects in images")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--config", default=default_config)
        p.add_argument("--model", required=True, help="Model name in the config file")
        p.add_argument("images", nargs="+")
        if name == "classify":
            p.add_argument("--top", type=int, default=5)
        else:
            p.add_argument("--output-dir", default=None, help="Write annotated images here")
        p.set_defaults(func=func)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    load_dotenv()
    args = build_parser().parse_args(argv)
    if args.verbose:
        setup_logging(base_dir=args.log_dir, log_level=logging.DEBUG, tensorrt_level=logging.DEBUG)
    else:
        setup_logging(base_dir=args.log_dir)

    # CUDA context for this process, needed before any engine is created
    import pycuda.autoinit  # noqa: F401

    try:
        return args.func(args)
    except (TensorRTError, FileNotFoundError, KeyError, ValueError) as e:
        log.error("%s failed: %s", args.command, e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
