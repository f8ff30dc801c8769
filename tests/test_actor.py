"""
Tests for the replay (PAL) actor and the TD(0) actor
"""

import numpy as np
import pytest

from csdr import (
    ActorVariant,
    ComputeSystem,
    ConfigurationError,
    Int2,
    Int3,
    ReplayActor,
    ReplayActorConfig,
    TDActor,
    TDActorConfig,
    VisibleLayerDesc,
    create_actor,
    discounted_return,
)

HIDDEN = Int3(2, 2, 3)
DESC = VisibleLayerDesc(size=Int3(2, 2, 4), radius=1)
INPUTS = [np.array([0, 3, 1, 2], dtype=np.int32)]


class TestDiscountedReturn:
    def test_matches_incremental_form(self):
        rng = np.random.default_rng(0)
        for n in range(0, 8):
            rewards = rng.normal(size=n).tolist()
            gamma = 0.87

            incremental = 0.0
            for r in reversed(rewards):
                incremental = r + gamma * incremental

            assert discounted_return(rewards, gamma) == pytest.approx(incremental)

    def test_simple_values(self):
        assert discounted_return([], 0.9) == 0.0
        assert discounted_return([1.0, 1.0, 1.0], 0.5) == pytest.approx(1.75)


class TestReplayActor:
    def test_creation(self, cs):
        actor = ReplayActor.create_random(cs, HIDDEN, 4, [DESC])
        w = actor.weights(0)
        assert w.size == 4 * 3 * 9 * 4
        assert w.min() >= -0.0001 and w.max() <= 0.0
        assert actor.history.capacity == 4
        np.testing.assert_array_equal(actor.hidden_counts, [4, 4, 4, 4])

    def test_capacity_too_small(self, cs):
        with pytest.raises(ConfigurationError):
            ReplayActor.create_random(cs, HIDDEN, 2, [DESC])

    def test_greedy_forward_is_deterministic(self, cs):
        actor = ReplayActor.create_random(cs, HIDDEN, 4, [DESC])
        first = actor.activate(cs, INPUTS).copy()
        second = actor.activate(cs, INPUTS).copy()
        np.testing.assert_array_equal(first, second)

        for x in range(2):
            for y in range(2):
                q = actor.q_values(Int2(x, y), INPUTS)
                assert first[x + y * 2] == int(np.argmax(q))

    def test_insufficient_history_is_a_no_op(self, cs):
        actor = ReplayActor.create_random(cs, HIDDEN, 3, [DESC])
        before = actor.weights(0).copy()
        feedback = np.zeros(4, dtype=np.int32)

        actor.step(cs, INPUTS, feedback)
        actor.step(cs, INPUTS, feedback)

        np.testing.assert_array_equal(actor.weights(0), before)
        assert len(actor.history) == 2

    def test_rewarded_action_value_increases_monotonically(self, cs):
        actor = ReplayActor.create_random(cs, HIDDEN, 8, [DESC], ReplayActorConfig(history_iters=4))
        target = np.full(4, 2, dtype=np.int32)
        pos = Int2(1, 1)

        values = []
        for _ in range(20):
            actor.step(cs, INPUTS, target, hidden_cs=target)
            values.append(float(actor.q_values(pos, INPUTS)[2]))

        assert values[1] == values[0]
        assert all(b > a for a, b in zip(values[1:], values[2:]))
        # Fixed point of Q = 1 + gamma * Q
        assert values[-1] < 1.0 / (1.0 - actor.config.gamma)

        np.testing.assert_array_equal(actor.activate(cs, INPUTS), target)

    def test_records_actor_choice_without_override(self, cs):
        actor = ReplayActor.create_random(cs, HIDDEN, 4, [DESC])
        out = actor.step(cs, INPUTS, np.zeros(4, dtype=np.int32), learn_enabled=False)
        np.testing.assert_array_equal(actor.history[-1].hidden_cs, out)

    def test_copy_is_independent(self, cs):
        actor = ReplayActor.create_random(cs, HIDDEN, 4, [DESC])
        dup = actor.copy()
        dup.weights(0)[:] = 1.0
        dup.step(cs, INPUTS, np.zeros(4, dtype=np.int32))

        assert actor.weights(0).max() <= 0.0
        assert len(actor.history) == 0


class TestTDActor:
    def test_creation(self, cs):
        actor = TDActor.create_random(cs, HIDDEN, 3, [DESC])
        assert np.all(actor.value_weights(0) == 0.0)
        assert actor.value_weights(0).size == 4 * 1 * 9 * 4
        assert actor.action_weights(0).size == 4 * 3 * 9 * 4
        assert np.abs(actor.action_weights(0)).max() <= 0.0001

    def test_capacity_too_small(self, cs):
        with pytest.raises(ConfigurationError):
            TDActor.create_random(cs, HIDDEN, 1, [DESC])

    def test_greedy_when_epsilon_zero(self, cs):
        actor = TDActor.create_random(cs, HIDDEN, 3, [DESC], TDActorConfig(epsilon=0.0))
        out = actor.step(cs, INPUTS, 0.0, learn_enabled=False)

        for x in range(2):
            for y in range(2):
                expected = int(np.argmax(actor.action_activations(Int2(x, y), INPUTS)))
                assert out[x + y * 2] == expected

    def test_uniform_when_epsilon_one(self, cs):
        actor = TDActor.create_random(cs, HIDDEN, 3, [DESC], TDActorConfig(epsilon=1.0))

        counts = np.zeros(3)
        for _ in range(300):
            for action in actor.step(cs, INPUTS, 0.0, learn_enabled=False):
                counts[action] += 1

        np.testing.assert_allclose(counts / counts.sum(), [1 / 3] * 3, atol=0.05)

    def test_exploration_reproducible_across_backends(self):
        a = ComputeSystem(seed=21)
        b = ComputeSystem(num_workers=2, batch_size2=(1, 1), seed=21)
        try:
            ta = TDActor.create_random(a, HIDDEN, 3, [DESC], TDActorConfig(epsilon=0.5))
            tb = TDActor.create_random(b, HIDDEN, 3, [DESC], TDActorConfig(epsilon=0.5))
            for step in range(10):
                reward = float(step % 2)
                np.testing.assert_array_equal(ta.step(a, INPUTS, reward), tb.step(b, INPUTS, reward))
            np.testing.assert_array_equal(ta.value_weights(0), tb.value_weights(0))
        finally:
            b.shutdown()

    def test_single_sample_is_a_no_op(self, cs):
        actor = TDActor.create_random(cs, HIDDEN, 3, [DESC])
        before = actor.action_weights(0).copy()

        actor.step(cs, INPUTS, 1.0)

        np.testing.assert_array_equal(actor.action_weights(0), before)
        assert np.all(actor.value_weights(0) == 0.0)

    def test_value_approaches_discounted_reward(self, cs):
        actor = TDActor.create_random(cs, HIDDEN, 2, [DESC], TDActorConfig(alpha=0.5, gamma=0.9, epsilon=0.0))
        pos = Int2(0, 1)

        values = []
        for _ in range(30):
            actor.step(cs, INPUTS, 1.0)
            values.append(actor.value(pos, INPUTS))

        assert values[0] == 0.0
        assert all(b > a for a, b in zip(values[1:], values[2:]))
        assert values[-1] < 10.0

    def test_td_update_of_taken_action(self, cs):
        config = TDActorConfig(alpha=0.5, gamma=0.9, epsilon=0.0)
        actor = TDActor.create_random(cs, HIDDEN, 2, [DESC], config)
        pos = Int2(0, 0)

        actor.step(cs, INPUTS, 0.0)
        taken = int(actor.history[0].hidden_cs[0])
        before = actor.action_activations(pos, INPUTS)[taken]

        actor.step(cs, INPUTS, 1.0)

        # V starts at zero, so the first TD error is the reward itself
        after = actor.action_activations(pos, INPUTS)[taken]
        assert after - before == pytest.approx(1.0, rel=1e-4)
        assert actor.value(pos, INPUTS) == pytest.approx(0.5, rel=1e-5)

    def test_pending_return_uses_whole_window(self, cs):
        actor = TDActor.create_random(cs, HIDDEN, 4, [DESC], TDActorConfig(gamma=0.5))
        for reward in [5.0, 1.0, 2.0, 4.0]:
            actor.step(cs, INPUTS, reward, learn_enabled=False)

        assert actor.pending_return() == pytest.approx(1.0 + 0.5 * 2.0 + 0.25 * 4.0)

    def test_copy_is_independent(self, cs):
        actor = TDActor.create_random(cs, HIDDEN, 3, [DESC])
        dup = actor.copy()
        for _ in range(3):
            dup.step(cs, INPUTS, 1.0)

        assert np.all(actor.value_weights(0) == 0.0)
        assert len(actor.history) == 0


class TestFactory:
    def test_variants(self, cs):
        assert isinstance(create_actor(cs, ActorVariant.REPLAY, HIDDEN, 3, [DESC]), ReplayActor)
        assert isinstance(create_actor(cs, ActorVariant.TD, HIDDEN, 3, [DESC]), TDActor)
        assert isinstance(create_actor(cs, "td", HIDDEN, 3, [DESC]), TDActor)

    def test_config_must_match_variant(self, cs):
        with pytest.raises(ConfigurationError):
            create_actor(cs, ActorVariant.REPLAY, HIDDEN, 3, [DESC], TDActorConfig())
        with pytest.raises(ConfigurationError):
            create_actor(cs, ActorVariant.TD, HIDDEN, 3, [DESC], ReplayActorConfig())

    def test_unknown_variant(self, cs):
        with pytest.raises(ValueError):
            create_actor(cs, "sarsa", HIDDEN, 3, [DESC])
