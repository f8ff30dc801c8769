"""
Tests for the Boltzmann-sampling predictor
"""

import numpy as np
import pytest

from csdr import ComputeSystem, Int3, Predictor, PredictorConfig, VisibleLayerDesc, softmax_probabilities


class TestSoftmax:
    def test_probabilities_sum_to_one(self):
        p = softmax_probabilities(np.array([0.0, 1.0, 2.0]))
        assert p.sum() == pytest.approx(1.0)
        assert np.all(np.diff(p) > 0)

    def test_stable_for_large_activations(self):
        p = softmax_probabilities(np.array([1000.0, 1000.0]))
        np.testing.assert_allclose(p, [0.5, 0.5])


class TestPredictor:
    def test_creation(self, cs, small_desc):
        pred = Predictor.create_random(cs, Int3(4, 4, 5), [small_desc])
        w = pred.weights(0)
        assert w.size == 16 * 5 * 9 * 3
        assert np.all(np.abs(w) <= 0.0001)
        # Corner columns see a clipped 2x2 field, interior ones the full 3x3
        assert pred.hidden_counts[0] == 4
        assert pred.hidden_counts[5] == 9

    def test_counts_sum_over_visible_layers(self, cs):
        descs = [VisibleLayerDesc(size=Int3(2, 2, 2), radius=1), VisibleLayerDesc(size=Int3(2, 2, 3), radius=0)]
        pred = Predictor.create_random(cs, Int3(2, 2, 2), descs)
        np.testing.assert_array_equal(pred.hidden_counts, [5, 5, 5, 5])

    def test_sampling_matches_softmax(self):
        cs = ComputeSystem(seed=42)
        pred = Predictor.create_random(cs, Int3(1, 1, 3), [VisibleLayerDesc(size=Int3(1, 1, 1), radius=0)])
        pred.weights(0)[:] = [0.0, 0.5, 1.0]
        inputs = [np.zeros(1, dtype=np.int32)]

        trials = 4000
        counts = np.zeros(3)
        for _ in range(trials):
            counts[pred.activate(cs, inputs)[0]] += 1

        expected = softmax_probabilities(np.array([0.0, 0.5, 1.0]))
        np.testing.assert_allclose(counts / trials, expected, atol=0.03)

    def test_sampling_is_reproducible_across_backends(self, small_desc, make_csdr):
        inputs = [make_csdr(small_desc.size)]

        a = ComputeSystem(seed=8)
        b = ComputeSystem(num_workers=3, batch_size2=(1, 1), seed=8)
        try:
            pa = Predictor.create_random(a, Int3(4, 4, 6), [small_desc])
            pb = Predictor.create_random(b, Int3(4, 4, 6), [small_desc])
            for _ in range(5):
                np.testing.assert_array_equal(pa.activate(a, inputs), pb.activate(b, inputs))
        finally:
            b.shutdown()

    def test_learning_makes_target_most_active(self, cs, small_desc, make_csdr):
        hidden = Int3(4, 4, 5)
        pred = Predictor.create_random(cs, hidden, [small_desc])
        inputs = [make_csdr(small_desc.size)]
        target = make_csdr(hidden)

        for _ in range(50):
            pred.learn(cs, target, inputs)

        pred.activate(cs, inputs)
        by_symbol = pred.hidden_activations.reshape(hidden.z, hidden.x * hidden.y)
        np.testing.assert_array_equal(by_symbol.argmax(axis=0), target)

    def test_zero_alpha_learning_is_a_no_op(self, cs, small_desc, make_csdr):
        pred = Predictor.create_random(cs, Int3(4, 4, 5), [small_desc], PredictorConfig(alpha=0.0))
        before = pred.weights(0).copy()

        pred.learn(cs, make_csdr(Int3(4, 4, 5)), [make_csdr(small_desc.size)])

        np.testing.assert_array_equal(pred.weights(0), before)

    def test_output_published_after_pass(self, cs, small_desc, make_csdr):
        pred = Predictor.create_random(cs, Int3(4, 4, 5), [small_desc])
        out = pred.activate(cs, [make_csdr(small_desc.size)])
        np.testing.assert_array_equal(out, pred._hidden_cs_temp)
        assert out.max() < 5
