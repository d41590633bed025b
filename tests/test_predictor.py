"""
test_predictor.py
~~~~~~~~~~~~~~~~~

Unit tests for batch inference.
"""

import numpy as np
import pytest

from digitnet.exceptions import DimensionMismatch
from digitnet.network import forward
from digitnet.predictor import classify, predict


@pytest.mark.unit
class TestPredict:

    def test_one_output_per_input_in_order(self, simple_network, rng):
        inputs = [rng.standard_normal(3) for _ in range(5)]
        outputs = predict(simple_network, inputs)

        assert len(outputs) == 5
        for x, output in zip(inputs, outputs):
            assert output.shape == (2,)
            assert np.array_equal(output, forward(simple_network, x)[0])

    def test_empty_batch(self, simple_network):
        assert predict(simple_network, []) == []

    def test_does_not_modify_network(self, simple_network):
        before = simple_network.copy()
        predict(simple_network, [[0.1, 0.2, 0.3]] * 3)
        for a, b in zip(simple_network.weights, before.weights):
            assert np.array_equal(a, b)

    def test_rejects_bad_input(self, simple_network):
        with pytest.raises(DimensionMismatch):
            predict(simple_network, [[0.1, 0.2, 0.3], [0.1]])

    def test_classify_returns_argmax(self, simple_network, rng):
        inputs = [rng.standard_normal(3) for _ in range(4)]
        digits = classify(simple_network, inputs)
        expected = [int(np.argmax(o)) for o in predict(simple_network, inputs)]

        assert digits == expected
        assert all(isinstance(d, int) for d in digits)
