"""
Tests for model shape parsing, input validation and tensor preparation.
"""

from unittest.mock import MagicMock

import numpy as np
import pytest

from detection.errors import AllocationError, InvalidInputError, ModelLoadError
from detection.preprocess import (
    LAYOUT_NCHW,
    LAYOUT_NHWC,
    parse_input_shape,
    parse_output_shape,
    prepare_input,
    validate_image,
)
from inference.onnx_backend import OnnxModelRunner


class TestShapes:
    def test_nhwc(self):
        assert parse_input_shape((1, 480, 640, 3)) == (640, 480, LAYOUT_NHWC)

    def test_nchw(self):
        assert parse_input_shape([1, 3, 480, 640]) == (640, 480, LAYOUT_NCHW)

    @pytest.mark.parametrize("shape", [None, (1, 640, 640), (1, None, 640, 3), (1, 0, 640, 3)])
    def test_bad_input_shape(self, shape):
        with pytest.raises(ModelLoadError):
            parse_input_shape(shape)

    def test_output(self):
        assert parse_output_shape((1, 84, 8400)) == (84, 8400)

    @pytest.mark.parametrize("shape", [(84, 8400), (1, "classes", 8400)])
    def test_bad_output_shape(self, shape):
        with pytest.raises(ModelLoadError):
            parse_output_shape(shape)


class TestValidateImage:
    @pytest.mark.parametrize("image", [
        np.zeros((4, 4), dtype=np.uint8),
        np.zeros((4, 4, 1), dtype=np.uint8),
        np.zeros((4, 4, 3), dtype=np.uint8),
        np.zeros((4, 4, 4), dtype=np.uint8),
    ])
    def test_accepts(self, image):
        validate_image(image)

    @pytest.mark.parametrize("image", [
        None,
        [[0, 0], [0, 0]],
        np.zeros((0, 4, 3), dtype=np.uint8),
        np.zeros((4,), dtype=np.uint8),
        np.zeros((4, 4, 5), dtype=np.uint8),
    ])
    def test_rejects(self, image):
        with pytest.raises(InvalidInputError):
            validate_image(image)


class TestPrepareInput:
    def test_grayscale_is_expanded(self):
        image = np.full((10, 10), 255, dtype=np.uint8)

        tensor = prepare_input(image, 5, 5)

        assert tensor.shape == (1, 5, 5, 3)
        assert np.allclose(tensor, 1.0)

    def test_bgra_drops_alpha(self):
        image = np.zeros((6, 6, 4), dtype=np.uint8)
        image[..., 2] = 255  # red
        image[..., 3] = 255

        tensor = prepare_input(image, 3, 3, layout=LAYOUT_NCHW)

        assert tensor.shape == (1, 3, 3, 3)
        assert np.allclose(tensor[0, 0], 1.0)
        assert np.allclose(tensor[0, 1:], 0.0)

    def test_source_is_not_modified(self):
        image = np.full((8, 8, 3), 200, dtype=np.uint8)
        original = image.copy()

        prepare_input(image, 4, 4)

        assert np.array_equal(image, original)

    def test_scratch_collects_intermediates(self):
        scratch = []

        tensor = prepare_input(np.zeros((8, 8, 3), dtype=np.uint8), 4, 4, scratch=scratch)

        assert scratch[-1] is tensor
        assert len(scratch) == 3

    def test_allocation_failure(self, monkeypatch):
        import detection.preprocess as preprocess

        def fail(*args, **kwargs):
            raise MemoryError("out of memory")

        monkeypatch.setattr(preprocess.cv2, "resize", fail)

        with pytest.raises(AllocationError):
            prepare_input(np.zeros((8, 8, 3), dtype=np.uint8), 4, 4)


class TestOnnxModelRunner:
    def make_runner(self, session):
        runner = OnnxModelRunner.__new__(OnnxModelRunner)
        runner._session = session
        runner.input_name = "images"
        return runner

    def test_run_returns_first_output(self):
        session = MagicMock()
        session.run.return_value = [np.ones((1, 6, 2), dtype=np.float32)]
        runner = self.make_runner(session)

        output = runner.run(np.zeros((1, 3, 4, 4), dtype=np.float32))

        assert output.shape == (1, 6, 2)
        session.run.assert_called_once()

    def test_allocation_errors_become_memory_errors(self):
        session = MagicMock()
        session.run.side_effect = RuntimeError("Failed to allocate memory for requested buffer")
        runner = self.make_runner(session)

        with pytest.raises(MemoryError):
            runner.run(np.zeros((1, 3, 4, 4), dtype=np.float32))

    def test_other_errors_propagate(self):
        session = MagicMock()
        session.run.side_effect = RuntimeError("invalid input name")
        runner = self.make_runner(session)

        with pytest.raises(RuntimeError):
            runner.run(np.zeros((1, 3, 4, 4), dtype=np.float32))

    def test_closed_runner_raises(self):
        runner = self.make_runner(MagicMock())
        runner.close()

        with pytest.raises(RuntimeError):
            runner.run(np.zeros((1, 3, 4, 4), dtype=np.float32))
