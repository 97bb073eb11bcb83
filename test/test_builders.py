"""
Engine Builder Tests

Caffe and ONNX network loading with a mocked TensorRT builder.
"""

from unittest.mock import MagicMock, call

import pytest

from digits_trt.ai.caffe_engine import CaffeRTEngine
from digits_trt.ai.onnx_engine import OnnxRTEngine
from digits_trt.errors import ModelBuildError, UnsupportedConfigError

from conftest import FakeEngine


@pytest.fixture
def caffe_files(tmp_path):
    prototxt = tmp_path / "deploy.prototxt"
    model = tmp_path / "snapshot.caffemodel"
    prototxt.write_text("name: \"GoogleNet\"\n")
    model.write_bytes(b"\x00weights")
    return str(prototxt), str(model)


@pytest.fixture
def builder(trt_env, fake_gpu):
    builder = trt_env.Builder.return_value
    builder.platform_has_fast_fp16 = True
    builder.platform_has_fast_int8 = False
    builder.build_serialized_network.return_value = b"built-plan"
    trt_env.Runtime.return_value.deserialize_cuda_engine.return_value = FakeEngine(
        {"data": (3, 4, 4), "prob": (10,)}, gpu=fake_gpu)
    return builder


def make_caffe_engine(data_type="float32"):
    engine = CaffeRTEngine(max_batch_size=2, data_type=data_type)
    engine.add_input("data", (3, 4, 4), 4)
    engine.add_output("prob", (10,), 4)
    return engine


class TestCaffeRTEngine:

    def test_load_model(self, trt_env, builder, caffe_files):
        prototxt, model = caffe_files
        network = builder.create_network.return_value
        network.has_implicit_batch_dimension = True
        parser = trt_env.CaffeParser.return_value

        engine = make_caffe_engine()
        engine.load_model(prototxt, model, max_batch_size=2, max_network_size=1 << 28)

        parser.parse.assert_called_once_with(deploy=prototxt, model=model, network=network,
                                             dtype=trt_env.float32)
        parsed = parser.parse.return_value
        parsed.find.assert_called_once_with("prob")
        network.mark_output.assert_called_once_with(parsed.find.return_value)
        assert builder.max_batch_size == 2

        config = builder.create_builder_config.return_value
        config.set_memory_pool_limit.assert_called_once_with(trt_env.MemoryPoolType.WORKSPACE, 1 << 28)
        config.set_flag.assert_not_called()
        builder.build_serialized_network.assert_called_once_with(network, config)
        trt_env.Runtime.return_value.deserialize_cuda_engine.assert_called_with(b"built-plan")
        assert engine.context is not None

    def test_fp16(self, trt_env, builder, caffe_files):
        engine = make_caffe_engine("float16")
        engine.load_model(*caffe_files)

        config = builder.create_builder_config.return_value
        config.set_flag.assert_called_once_with(trt_env.BuilderFlag.FP16)
        assert trt_env.CaffeParser.return_value.parse.call_args.kwargs["dtype"] == trt_env.float16

    def test_fp16_downgraded_without_fast_fp16(self, trt_env, builder, caffe_files, caplog):
        builder.platform_has_fast_fp16 = False
        make_caffe_engine("float16").load_model(*caffe_files)

        builder.create_builder_config.return_value.set_flag.assert_not_called()
        assert "FP16 not supported" in caplog.text

    def test_int8_unsupported(self, trt_env, builder, caffe_files):
        with pytest.raises(UnsupportedConfigError, match="INT8"):
            make_caffe_engine("int8").load_model(*caffe_files)

    def test_missing_files(self, trt_env, builder, tmp_path):
        with pytest.raises(FileNotFoundError, match="deploy.prototxt"):
            make_caffe_engine().load_model(str(tmp_path / "deploy.prototxt"), str(tmp_path / "x.caffemodel"))

    def test_missing_output_layer(self, trt_env, builder, caffe_files):
        trt_env.CaffeParser.return_value.parse.return_value.find.return_value = None
        with pytest.raises(ModelBuildError, match="Output prob not found"):
            make_caffe_engine().load_model(*caffe_files)

    def test_parse_failure(self, trt_env, builder, caffe_files):
        trt_env.CaffeParser.return_value.parse.return_value = None
        with pytest.raises(ModelBuildError, match="Failed to parse"):
            make_caffe_engine().load_model(*caffe_files)

    def test_build_failure(self, trt_env, builder, caffe_files):
        builder.build_serialized_network.return_value = None
        with pytest.raises(ModelBuildError, match="could not build"):
            make_caffe_engine().load_model(*caffe_files)

    def test_tensorrt_without_caffe_parser(self, trt_env, builder, caffe_files):
        del trt_env.CaffeParser
        trt_env.__version__ = "10.3.0"
        with pytest.raises(UnsupportedConfigError, match="no Caffe parser"):
            make_caffe_engine().load_model(*caffe_files)


def _tensor(name, shape=None):
    tensor = MagicMock()
    tensor.name = name
    tensor.shape = shape
    return tensor


class TestOnnxRTEngine:

    @pytest.fixture
    def onnx_file(self, tmp_path):
        path = tmp_path / "googlenet.onnx"
        path.write_bytes(b"onnx-bytes")
        return str(path)

    @pytest.fixture
    def network(self, builder):
        network = builder.create_network.return_value
        network.has_implicit_batch_dimension = False
        network.num_inputs = 1
        network.get_input.return_value = _tensor("data", (-1, 3, 4, 4))
        outputs = [_tensor("prob"), _tensor("loss3/classifier")]
        network.num_outputs = len(outputs)
        network.get_output.side_effect = lambda i: outputs[i]
        network.outputs = outputs
        return network

    def make_engine(self):
        engine = OnnxRTEngine(max_batch_size=2)
        engine.add_input("data", (3, 4, 4), 4)
        engine.add_output("prob", (10,), 4)
        return engine

    def test_load_model(self, trt_env, builder, network, onnx_file):
        trt_env.OnnxParser.return_value.parse.return_value = True

        engine = self.make_engine()
        engine.load_model(onnx_file, max_batch_size=2)

        trt_env.OnnxParser.return_value.parse.assert_called_once_with(b"onnx-bytes")
        network.unmark_output.assert_called_once_with(network.outputs[1])
        profile = builder.create_optimization_profile.return_value
        profile.set_shape.assert_called_once_with("data", (1, 3, 4, 4), (2, 3, 4, 4), (2, 3, 4, 4))
        builder.create_builder_config.return_value.add_optimization_profile.assert_called_once_with(profile)
        assert engine.context is not None

    def test_parse_errors_reported(self, trt_env, builder, network, onnx_file):
        parser = trt_env.OnnxParser.return_value
        parser.parse.return_value = False
        parser.num_errors = 1
        parser.get_error.return_value = "Unsupported operator: Foo"

        with pytest.raises(ModelBuildError, match="Unsupported operator: Foo"):
            self.make_engine().load_model(onnx_file)

    def test_missing_output(self, trt_env, builder, network, onnx_file):
        trt_env.OnnxParser.return_value.parse.return_value = True
        engine = OnnxRTEngine()
        engine.add_input("data", (3, 4, 4), 4)
        engine.add_output("softmax", (10,), 4)

        with pytest.raises(ModelBuildError, match="softmax"):
            engine.load_model(onnx_file)

    def test_missing_input(self, trt_env, builder, network, onnx_file):
        trt_env.OnnxParser.return_value.parse.return_value = True
        engine = OnnxRTEngine()
        engine.add_input("input", (3, 4, 4), 4)
        engine.add_output("prob", (10,), 4)

        with pytest.raises(ModelBuildError, match="Input input not found"):
            engine.load_model(onnx_file)

    def test_only_batch_may_be_dynamic(self, trt_env, builder, network, onnx_file):
        trt_env.OnnxParser.return_value.parse.return_value = True
        network.get_input.return_value = _tensor("data", (-1, 3, -1, -1))

        with pytest.raises(UnsupportedConfigError, match="Only the batch dimension"):
            self.make_engine().load_model(onnx_file)

    def test_missing_file(self, trt_env, builder, tmp_path):
        with pytest.raises(FileNotFoundError):
            self.make_engine().load_model(str(tmp_path / "none.onnx"))
