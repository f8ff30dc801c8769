"""
Actor Layers (reinforcement learning over CSDRs)

Implements two alternative designs, both mapping input CSDRs to an action
CSDR with one action per hidden column:

- ReplayActor: greedy Q-values, history replay of random adjacent sample
  pairs, persistent advantage learning (PAL) of the taken action. Reward
  is 1 when the recorded action matches a feedback lattice.
- TDActor: a state-value plane plus an action-preference plane, epsilon-
  greedy action selection, n-step TD(0) updates from a scalar reward.

Every hidden column acts as an independent agent over its own receptive
field. Neighbouring columns see overlapping inputs but never share weights.
"""

import copy
import logging
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np

from .compute_system import ComputeSystem
from .config import ReplayActorConfig, TDActorConfig
from .errors import ConfigurationError, StreamFormatError
from .history import HistoryBuffer, HistorySample
from .lattice import Int2, Int3, address2
from .persistence import (
    check_length,
    read_buffer,
    read_float,
    read_int,
    read_int3,
    read_visible_layer,
    write_buffer,
    write_float,
    write_int,
    write_int3,
    write_visible_layer,
)
from .predictor import column_synapse_counts
from .receptive_field import (
    LocalReceptiveFieldWeights,
    VisibleLayerDesc,
    WeightLayout,
    validate_size,
)

logger = logging.getLogger(__name__)


class ActorVariant(Enum):
    REPLAY = "replay"   # Greedy, history replay, PAL (feedback lattice)
    TD = "td"           # Epsilon-greedy, value/action planes, TD(0) (scalar reward)


def discounted_return(rewards: Sequence[float], gamma: float) -> float:
    """sum(rewards[i] * gamma**i), recomputed from scratch."""
    q = 0.0
    for i in range(len(rewards) - 1, -1, -1):
        q += rewards[i] * gamma ** i
    return q


def _check_capacity(capacity: int, minimum: int, name: str) -> None:
    if capacity < minimum:
        raise ConfigurationError(f"{name} history capacity must be >= {minimum}, got {capacity}")


# =============================================================================
# VARIANT A: HISTORY REPLAY + PAL
# =============================================================================

class ReplayActor:
    """
    Greedy actor trained by replaying its history.

    Each step records (inputs, action taken, feedback). Learning draws
    `history_iters` random adjacent pairs (t, t+1) and credits the action
    recorded at t+1, judged against its feedback, to the state at t.
    """

    MIN_CAPACITY = 3

    def __init__(
        self,
        hidden_size: Int3,
        visible_layers: List[LocalReceptiveFieldWeights],
        history: HistoryBuffer,
        config: Optional[ReplayActorConfig] = None,
        hidden_counts: Optional[np.ndarray] = None
    ):
        self.config = config or ReplayActorConfig()
        self.config.validate()

        self._hidden_size = validate_size(hidden_size, "hidden size")
        self._visible_layers = visible_layers
        self._history = history

        if hidden_counts is None:
            hidden_counts = column_synapse_counts(self._hidden_size, visible_layers)
        self._hidden_counts = hidden_counts

        self._hidden_cs = np.zeros(self._hidden_size.x * self._hidden_size.y, dtype=np.int32)

    @classmethod
    def create_random(
        cls,
        cs: ComputeSystem,
        hidden_size: Int3,
        history_capacity: int,
        visible_layer_descs: Sequence[VisibleLayerDesc],
        config: Optional[ReplayActorConfig] = None
    ) -> 'ReplayActor':
        """
        Create an actor with weights drawn from U(-1e-4, 0).

        Args:
            cs: ComputeSystem supplying the random generator
            hidden_size: (width, height, number of actions)
            history_capacity: Samples kept for replay (fixed)
            visible_layer_descs: One descriptor per input CSDR
            config: Hyperparameters (defaults if omitted)
        """
        hidden_size = validate_size(hidden_size, "hidden size")
        _check_capacity(history_capacity, cls.MIN_CAPACITY, "ReplayActor")

        layers = []
        for desc in visible_layer_descs:
            vl = LocalReceptiveFieldWeights(hidden_size, desc, layout=WeightLayout.CELL_MAJOR)
            vl.initialize_uniform(cs.rng, -0.0001, 0.0)
            layers.append(vl)

        history = HistoryBuffer.allocate(
            history_capacity,
            [vl.desc.num_columns for vl in layers],
            hidden_size.x * hidden_size.y,
            with_feedback=True
        )

        logger.debug(
            "ReplayActor: hidden=%s visible_layers=%d history=%d",
            tuple(hidden_size), len(layers), history_capacity
        )
        return cls(hidden_size, layers, history, config)

    @property
    def hidden_size(self) -> Int3:
        return self._hidden_size

    @property
    def hidden_cs(self) -> np.ndarray:
        view = self._hidden_cs.view()
        view.flags.writeable = False
        return view

    @property
    def hidden_counts(self) -> np.ndarray:
        return self._hidden_counts

    @property
    def history(self) -> HistoryBuffer:
        return self._history

    @property
    def num_visible_layers(self) -> int:
        return len(self._visible_layers)

    def visible_layer(self, index: int) -> LocalReceptiveFieldWeights:
        return self._visible_layers[index]

    def visible_layer_desc(self, index: int) -> VisibleLayerDesc:
        return self._visible_layers[index].desc

    def weights(self, index: int) -> np.ndarray:
        return self._visible_layers[index].weights

    def q_values(self, pos: Int2, input_cs: Sequence[np.ndarray]) -> np.ndarray:
        """Count-normalised activation of every action of one hidden column."""
        q = np.zeros(self._hidden_size.z, dtype=np.float32)
        for vli, vl in enumerate(self._visible_layers):
            q += vl.activations(pos, input_cs[vli])

        return q / max(1, int(self._hidden_counts[address2(pos, self._hidden_size.x)]))

    # ------------------------------------------------------------------ kernels

    def _forward(self, pos: Int2, rng, input_cs: Sequence[np.ndarray]) -> None:
        self._hidden_cs[address2(pos, self._hidden_size.x)] = int(np.argmax(self.q_values(pos, input_cs)))

    def _learn(self, pos: Int2, rng, s: HistorySample, s_prev: HistorySample) -> None:
        column = address2(pos, self._hidden_size.x)

        target_c = int(s.hidden_cs[column])

        q_next = self.q_values(pos, s.input_cs)
        q_prev = self.q_values(pos, s_prev.input_cs)

        max_next = float(q_next.max())
        max_prev = float(q_prev.max())
        next_q_action = float(q_next[target_c])
        q_action = float(q_prev[target_c])

        reward = 1.0 if target_c == int(s.feedback_cs[column]) else 0.0

        cfg = self.config
        d_q = reward + cfg.gamma * max_next - q_action
        d_adv = d_q - cfg.gap * (max_prev - q_action)
        d_pal = max(d_adv, d_q - cfg.gap * (max_next - next_q_action))

        delta = cfg.alpha * d_pal

        for vli, vl in enumerate(self._visible_layers):
            vl.add_delta(pos, target_c, s_prev.input_cs[vli], delta)

    # ------------------------------------------------------------------ step

    def activate(self, cs: ComputeSystem, input_cs: Sequence[np.ndarray]) -> np.ndarray:
        """Greedy action per column, without touching history."""
        hid = self._hidden_size
        cs.run_kernel2(lambda pos, rng: self._forward(pos, rng, input_cs), (hid.x, hid.y))
        return self.hidden_cs

    def step(
        self,
        cs: ComputeSystem,
        input_cs: Sequence[np.ndarray],
        feedback_cs: np.ndarray,
        learn_enabled: bool = True,
        hidden_cs: Optional[np.ndarray] = None
    ) -> np.ndarray:
        """
        Select actions, record the step and (optionally) replay history.

        Args:
            cs: ComputeSystem
            input_cs: Current input CSDRs
            feedback_cs: Per-column symbol that counts as rewarded
            learn_enabled: Whether to replay and update weights
            hidden_cs: Actions actually taken, if they differ from the
                actor's own choice (external exploration)

        Returns:
            The actor's selected actions
        """
        self.activate(cs, input_cs)

        taken = self._hidden_cs if hidden_cs is None else hidden_cs
        self._history.push(input_cs, taken, feedback_cs=feedback_cs)

        if learn_enabled and len(self._history) > 2:
            hid = self._hidden_size

            for _ in range(self.config.history_iters):
                t = int(cs.rng.integers(0, len(self._history) - 1))

                s = self._history[t + 1]
                s_prev = self._history[t]

                cs.run_kernel2(lambda pos, rng: self._learn(pos, rng, s, s_prev), (hid.x, hid.y))

        return self.hidden_cs

    def copy(self) -> 'ReplayActor':
        """Independent copy of weights, history and hyperparameters."""
        return copy.deepcopy(self)

    # ------------------------------------------------------------------ persistence

    def write_to_stream(self, stream) -> None:
        cfg = self.config

        write_int3(stream, self._hidden_size)

        write_float(stream, cfg.alpha)
        write_float(stream, cfg.gamma)
        write_float(stream, cfg.gap)
        write_int(stream, cfg.history_iters)

        write_int(stream, len(self._history))

        write_buffer(stream, self._hidden_cs)
        write_buffer(stream, self._hidden_counts)

        write_int(stream, len(self._visible_layers))
        for vl in self._visible_layers:
            write_visible_layer(stream, vl)

        write_int(stream, self._history.capacity)
        for s in self._history.slots():
            for buf in s.input_cs:
                write_buffer(stream, buf)
            write_buffer(stream, s.hidden_cs)
            write_buffer(stream, s.feedback_cs)

    @classmethod
    def read_from_stream(cls, stream) -> 'ReplayActor':
        hidden_size = read_int3(stream)
        num_columns = hidden_size.x * hidden_size.y

        config = ReplayActorConfig(
            alpha=read_float(stream),
            gamma=read_float(stream),
            gap=read_float(stream),
            history_iters=read_int(stream)
        )

        history_size = read_int(stream)

        hidden_cs = check_length(read_buffer(stream, np.int32), num_columns, "hidden_cs")
        hidden_counts = check_length(read_buffer(stream, np.int32), num_columns, "hidden_counts")

        num_visible_layers = read_int(stream)
        layers = [
            read_visible_layer(stream, hidden_size, WeightLayout.CELL_MAJOR)
            for _ in range(num_visible_layers)
        ]

        capacity = read_int(stream)
        if not 0 <= history_size <= capacity:
            raise StreamFormatError(f"history size {history_size} exceeds capacity {capacity}")

        samples = []
        for _ in range(capacity):
            input_cs = [
                check_length(read_buffer(stream, np.int32), vl.desc.num_columns, "history input_cs")
                for vl in layers
            ]
            samples.append(HistorySample(
                input_cs=input_cs,
                hidden_cs=check_length(read_buffer(stream, np.int32), num_columns, "history hidden_cs"),
                feedback_cs=check_length(read_buffer(stream, np.int32), num_columns, "history feedback_cs")
            ))

        history = HistoryBuffer(samples)
        history.restore(samples, history_size)

        actor = cls(hidden_size, layers, history, config, hidden_counts=hidden_counts)
        actor._hidden_cs[:] = hidden_cs
        return actor


# =============================================================================
# VARIANT B: ONLINE TD(0) WITH VALUE/ACTION PLANES
# =============================================================================

class TDActor:
    """
    Epsilon-greedy actor-critic.

    The value plane holds one weight set per spatial column (shared by all
    its actions); the action plane holds one per (column, action). The TD
    error is computed over the whole pending history window, so a history
    capacity of n gives an (n-1)-step return.
    """

    MIN_CAPACITY = 2

    def __init__(
        self,
        hidden_size: Int3,
        value_layers: List[LocalReceptiveFieldWeights],
        action_layers: List[LocalReceptiveFieldWeights],
        history: HistoryBuffer,
        config: Optional[TDActorConfig] = None
    ):
        self.config = config or TDActorConfig()
        self.config.validate()

        self._hidden_size = validate_size(hidden_size, "hidden size")
        self._value_layers = value_layers
        self._action_layers = action_layers
        self._history = history

        num_columns = self._hidden_size.x * self._hidden_size.y

        self._hidden_cs = np.zeros(num_columns, dtype=np.int32)
        self._hidden_values = np.zeros(num_columns, dtype=np.float32)

    @classmethod
    def create_random(
        cls,
        cs: ComputeSystem,
        hidden_size: Int3,
        history_capacity: int,
        visible_layer_descs: Sequence[VisibleLayerDesc],
        config: Optional[TDActorConfig] = None
    ) -> 'TDActor':
        """Create an actor with zero value weights and U(-1e-4, 1e-4) action weights."""
        hidden_size = validate_size(hidden_size, "hidden size")
        _check_capacity(history_capacity, cls.MIN_CAPACITY, "TDActor")

        value_size = Int3(hidden_size.x, hidden_size.y, 1)

        value_layers = []
        action_layers = []
        for desc in visible_layer_descs:
            value_layers.append(LocalReceptiveFieldWeights(value_size, desc, layout=WeightLayout.OFFSET_MAJOR))

            vl = LocalReceptiveFieldWeights(hidden_size, desc, layout=WeightLayout.OFFSET_MAJOR)
            vl.initialize_uniform(cs.rng, -0.0001, 0.0001)
            action_layers.append(vl)

        history = HistoryBuffer.allocate(
            history_capacity,
            [desc.num_columns for desc in visible_layer_descs],
            hidden_size.x * hidden_size.y
        )

        logger.debug(
            "TDActor: hidden=%s visible_layers=%d history=%d",
            tuple(hidden_size), len(action_layers), history_capacity
        )
        return cls(hidden_size, value_layers, action_layers, history, config)

    @property
    def hidden_size(self) -> Int3:
        return self._hidden_size

    @property
    def hidden_cs(self) -> np.ndarray:
        view = self._hidden_cs.view()
        view.flags.writeable = False
        return view

    @property
    def hidden_values(self) -> np.ndarray:
        return self._hidden_values

    @property
    def history(self) -> HistoryBuffer:
        return self._history

    @property
    def num_visible_layers(self) -> int:
        return len(self._action_layers)

    def visible_layer(self, index: int) -> LocalReceptiveFieldWeights:
        """Action plane of visible layer `index`."""
        return self._action_layers[index]

    def value_layer(self, index: int) -> LocalReceptiveFieldWeights:
        return self._value_layers[index]

    def visible_layer_desc(self, index: int) -> VisibleLayerDesc:
        return self._action_layers[index].desc

    def weights(self, index: int) -> np.ndarray:
        return self._action_layers[index].weights

    def value_weights(self, index: int) -> np.ndarray:
        return self._value_layers[index].weights

    def action_weights(self, index: int) -> np.ndarray:
        return self._action_layers[index].weights

    def _count(self, pos: Int2) -> int:
        return max(1, sum(vl.count(pos) for vl in self._action_layers))

    def value(self, pos: Int2, input_cs: Sequence[np.ndarray]) -> float:
        """State-value estimate of one column."""
        total = 0.0
        for vli, vl in enumerate(self._value_layers):
            total += vl.activation(pos, 0, input_cs[vli])
        return total / self._count(pos)

    def action_activations(self, pos: Int2, input_cs: Sequence[np.ndarray]) -> np.ndarray:
        activations = np.zeros(self._hidden_size.z, dtype=np.float32)
        for vli, vl in enumerate(self._action_layers):
            activations += vl.activations(pos, input_cs[vli])
        return activations / self._count(pos)

    def pending_return(self) -> float:
        """Discounted reward of every sample after the oldest, recomputed in full."""
        rewards = [self._history[t].reward for t in range(1, len(self._history))]
        return discounted_return(rewards, self.config.gamma)

    # ------------------------------------------------------------------ kernels

    def _forward(self, pos: Int2, rng: np.random.Generator, input_cs: Sequence[np.ndarray]) -> None:
        column = address2(pos, self._hidden_size.x)

        self._hidden_values[column] = self.value(pos, input_cs)

        if rng.random() < self.config.epsilon:
            self._hidden_cs[column] = int(rng.integers(0, self._hidden_size.z))
        else:
            self._hidden_cs[column] = int(np.argmax(self.action_activations(pos, input_cs)))

    def _learn(self, pos: Int2, rng, s_prev: HistorySample, q: float, g: float) -> None:
        column = address2(pos, self._hidden_size.x)

        value_prev = self.value(pos, s_prev.input_cs)

        td_error = q + g * float(self._hidden_values[column]) - value_prev

        action_prev = int(s_prev.hidden_cs[column])

        for vli in range(len(self._action_layers)):
            self._value_layers[vli].add_delta(pos, 0, s_prev.input_cs[vli], self.config.alpha * td_error)
            self._action_layers[vli].add_delta(pos, action_prev, s_prev.input_cs[vli], td_error)

    # ------------------------------------------------------------------ step

    def step(
        self,
        cs: ComputeSystem,
        input_cs: Sequence[np.ndarray],
        reward: float,
        learn_enabled: bool = True
    ) -> np.ndarray:
        """
        Select actions, record the step and update from the oldest sample.

        Args:
            cs: ComputeSystem
            input_cs: Current input CSDRs
            reward: Reward received on arriving at this step
            learn_enabled: Whether to update weights

        Returns:
            The actor's selected actions
        """
        hid = self._hidden_size

        cs.run_kernel2(lambda pos, rng: self._forward(pos, rng, input_cs), (hid.x, hid.y))

        self._history.push(input_cs, self._hidden_cs, reward=reward)

        if learn_enabled and len(self._history) > 1:
            q = self.pending_return()
            g = self.config.gamma ** (len(self._history) - 1)

            s_prev = self._history[0]

            cs.run_kernel2(lambda pos, rng: self._learn(pos, rng, s_prev, q, g), (hid.x, hid.y))

        return self.hidden_cs

    def copy(self) -> 'TDActor':
        return copy.deepcopy(self)

    # ------------------------------------------------------------------ persistence

    def write_to_stream(self, stream) -> None:
        cfg = self.config

        write_int3(stream, self._hidden_size)

        write_float(stream, cfg.alpha)
        write_float(stream, cfg.gamma)
        write_float(stream, cfg.epsilon)

        write_int(stream, len(self._history))

        write_buffer(stream, self._hidden_cs)
        write_buffer(stream, self._hidden_values)

        write_int(stream, len(self._action_layers))
        for value_layer, action_layer in zip(self._value_layers, self._action_layers):
            write_visible_layer(stream, value_layer)
            write_visible_layer(stream, action_layer)

        write_int(stream, self._history.capacity)
        for s in self._history.slots():
            for buf in s.input_cs:
                write_buffer(stream, buf)
            write_buffer(stream, s.hidden_cs)
            write_float(stream, s.reward)

    @classmethod
    def read_from_stream(cls, stream) -> 'TDActor':
        hidden_size = read_int3(stream)
        num_columns = hidden_size.x * hidden_size.y
        value_size = Int3(hidden_size.x, hidden_size.y, 1)

        config = TDActorConfig(
            alpha=read_float(stream),
            gamma=read_float(stream),
            epsilon=read_float(stream)
        )

        history_size = read_int(stream)

        hidden_cs = check_length(read_buffer(stream, np.int32), num_columns, "hidden_cs")
        hidden_values = check_length(read_buffer(stream, np.float32), num_columns, "hidden_values")

        num_visible_layers = read_int(stream)
        value_layers = []
        action_layers = []
        for _ in range(num_visible_layers):
            value_layers.append(read_visible_layer(stream, value_size, WeightLayout.OFFSET_MAJOR))
            action_layers.append(read_visible_layer(stream, hidden_size, WeightLayout.OFFSET_MAJOR))

        capacity = read_int(stream)
        if not 0 <= history_size <= capacity:
            raise StreamFormatError(f"history size {history_size} exceeds capacity {capacity}")

        samples = []
        for _ in range(capacity):
            input_cs = [
                check_length(read_buffer(stream, np.int32), vl.desc.num_columns, "history input_cs")
                for vl in action_layers
            ]
            hidden = check_length(read_buffer(stream, np.int32), num_columns, "history hidden_cs")
            samples.append(HistorySample(input_cs=input_cs, hidden_cs=hidden, reward=read_float(stream)))

        history = HistoryBuffer(samples)
        history.restore(samples, history_size)

        actor = cls(hidden_size, value_layers, action_layers, history, config)
        actor._hidden_cs[:] = hidden_cs
        actor._hidden_values[:] = hidden_values
        return actor


def create_actor(
    cs: ComputeSystem,
    variant: ActorVariant,
    hidden_size: Int3,
    history_capacity: int,
    visible_layer_descs: Sequence[VisibleLayerDesc],
    config=None
):
    """
    Factory for either actor design.

    Args:
        variant: ActorVariant.REPLAY (greedy + PAL replay) or ActorVariant.TD
            (epsilon-greedy + TD(0))
        config: ReplayActorConfig or TDActorConfig matching the variant
    """
    variant = ActorVariant(variant)

    if variant == ActorVariant.REPLAY:
        if config is not None and not isinstance(config, ReplayActorConfig):
            raise ConfigurationError("ReplayActor requires a ReplayActorConfig")
        return ReplayActor.create_random(cs, hidden_size, history_capacity, visible_layer_descs, config)

    if config is not None and not isinstance(config, TDActorConfig):
        raise ConfigurationError("TDActor requires a TDActorConfig")
    return TDActor.create_random(cs, hidden_size, history_capacity, visible_layer_descs, config)
