"""
Model runner interface.

A runner wraps one loaded model. The detection engine reads the input/output
shapes once at setup and then calls run() with a prepared input tensor; the
returned array holds the raw [1, C, E] output.
"""

from __future__ import annotations

from typing import Any, Callable, Protocol, Sequence

import numpy as np


class ModelRunner(Protocol):
    input_shape: Sequence[Any]
    output_shape: Sequence[Any]
    input_dtype: Any

    def run(self, input_tensor: np.ndarray) -> np.ndarray:
        ...

    def close(self) -> None:
        ...


# (model_bytes, num_threads) -> runner
RunnerFactory = Callable[[bytes, int], ModelRunner]
