"""
ONNX Runtime model runner (CPU).

Loads the model straight from bytes so the engine owns the artifact and
nothing is shared between engine instances.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import numpy as np
import onnxruntime as ort

from .backend import ModelRunner

_ONNX_TYPES: Dict[str, Any] = {
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
    "tensor(double)": np.float64,
    "tensor(uint8)": np.uint8,
    "tensor(int8)": np.int8,
}


class OnnxModelRunner(ModelRunner):
    def __init__(self, model_bytes: bytes, num_threads: int = 4):
        options = ort.SessionOptions()
        options.intra_op_num_threads = max(1, int(num_threads))
        self._session: Optional[ort.InferenceSession] = ort.InferenceSession(
            model_bytes,
            sess_options=options,
            providers=["CPUExecutionProvider"],
        )

        model_input = self._session.get_inputs()[0]
        model_output = self._session.get_outputs()[0]
        self.input_name = model_input.name
        self.input_shape = tuple(model_input.shape)
        self.output_shape = tuple(model_output.shape)
        self.input_dtype = _ONNX_TYPES.get(model_input.type, np.float32)

        logging.debug(
            f"ONNX model loaded - input {self.input_name}{list(self.input_shape)} "
            f"({model_input.type}), output {list(self.output_shape)}"
        )

    def run(self, input_tensor: np.ndarray) -> np.ndarray:
        if self._session is None:
            raise RuntimeError("Model runner is closed")
        try:
            outputs = self._session.run(None, {self.input_name: input_tensor})
        except Exception as e:
            # onnxruntime reports allocator failures as a generic RuntimeException
            if "allocate" in str(e).lower():
                raise MemoryError(str(e)) from e
            raise
        return outputs[0]

    def close(self) -> None:
        self._session = None


def create_onnx_runner(model_bytes: bytes, num_threads: int = 4) -> OnnxModelRunner:
    return OnnxModelRunner(model_bytes, num_threads=num_threads)
