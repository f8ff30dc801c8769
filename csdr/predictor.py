"""
Predictor

Single-pass decoder from sparse inputs to a target CSDR. Activations are
count-normalised weight sums; the output symbol of each column is sampled
from a Boltzmann (softmax) distribution rather than taken greedily.
Learning is a delta rule toward a one-hot teaching lattice, with the
sigmoid of the raw activation as the predicted probability.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np

from .compute_system import ComputeSystem
from .config import PredictorConfig
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
from .receptive_field import (
    LocalReceptiveFieldWeights,
    VisibleLayerDesc,
    WeightLayout,
    validate_size,
)

logger = logging.getLogger(__name__)


def sigmoid(x):
    return 1.0 / (1.0 + np.exp(-x))


def softmax_probabilities(activations: np.ndarray) -> np.ndarray:
    """Softmax over a column's activations, stabilised by subtracting the max."""
    exps = np.exp(activations - np.max(activations))
    return exps / exps.sum()


def column_synapse_counts(hidden_size: Int3, visible_layers: Sequence[LocalReceptiveFieldWeights]) -> np.ndarray:
    """In-bounds visible columns seen by each hidden column, summed over layers."""
    counts = np.zeros(hidden_size.x * hidden_size.y, dtype=np.int32)
    for vl in visible_layers:
        for x in range(hidden_size.x):
            for y in range(hidden_size.y):
                counts[address2((x, y), hidden_size.x)] += vl.count(Int2(x, y))
    return counts


class Predictor:
    """Stochastic CSDR predictor with Boltzmann output sampling."""

    def __init__(
        self,
        hidden_size: Int3,
        visible_layers: List[LocalReceptiveFieldWeights],
        config: Optional[PredictorConfig] = None,
        hidden_counts: Optional[np.ndarray] = None
    ):
        self.config = config or PredictorConfig()
        self.config.validate()

        self._hidden_size = validate_size(hidden_size, "hidden size")
        self._visible_layers = visible_layers

        num_columns = self._hidden_size.x * self._hidden_size.y

        if hidden_counts is None:
            hidden_counts = column_synapse_counts(self._hidden_size, visible_layers)
        self._hidden_counts = hidden_counts

        self._hidden_cs = np.zeros(num_columns, dtype=np.int32)
        self._hidden_cs_temp = np.zeros(num_columns, dtype=np.int32)
        self._hidden_activations = np.zeros(num_columns * self._hidden_size.z, dtype=np.float32)

    @classmethod
    def create_random(
        cls,
        cs: ComputeSystem,
        hidden_size: Int3,
        visible_layer_descs: Sequence[VisibleLayerDesc],
        config: Optional[PredictorConfig] = None
    ) -> 'Predictor':
        """Create a predictor with weights drawn from U(-1e-4, 1e-4)."""
        hidden_size = validate_size(hidden_size, "hidden size")

        layers = []
        for desc in visible_layer_descs:
            vl = LocalReceptiveFieldWeights(hidden_size, desc, layout=WeightLayout.CELL_MAJOR)
            vl.initialize_uniform(cs.rng, -0.0001, 0.0001)
            layers.append(vl)

        logger.debug(
            "Predictor: hidden=%s visible_layers=%d weights=%d",
            tuple(hidden_size), len(layers), sum(vl.num_weights for vl in layers)
        )
        return cls(hidden_size, layers, config)

    @property
    def hidden_size(self) -> Int3:
        return self._hidden_size

    @property
    def hidden_cs(self) -> np.ndarray:
        view = self._hidden_cs.view()
        view.flags.writeable = False
        return view

    @property
    def hidden_activations(self) -> np.ndarray:
        return self._hidden_activations

    @property
    def hidden_counts(self) -> np.ndarray:
        return self._hidden_counts

    @property
    def num_visible_layers(self) -> int:
        return len(self._visible_layers)

    def visible_layer(self, index: int) -> LocalReceptiveFieldWeights:
        return self._visible_layers[index]

    def visible_layer_desc(self, index: int) -> VisibleLayerDesc:
        return self._visible_layers[index].desc

    def weights(self, index: int) -> np.ndarray:
        return self._visible_layers[index].weights

    # ------------------------------------------------------------------ kernels

    def _column_cells(self, pos: Int2) -> np.ndarray:
        hid = self._hidden_size
        return pos.x + pos.y * hid.x + np.arange(hid.z) * hid.x * hid.y

    def _compute_activations(self, pos: Int2, input_cs: Sequence[np.ndarray]) -> np.ndarray:
        hid = self._hidden_size

        activations = np.zeros(hid.z, dtype=np.float32)
        for vli, vl in enumerate(self._visible_layers):
            activations += vl.activations(pos, input_cs[vli])

        activations /= max(1, int(self._hidden_counts[address2(pos, hid.x)]))

        self._hidden_activations[self._column_cells(pos)] = activations
        return activations

    def _forward(self, pos: Int2, rng: np.random.Generator, input_cs: Sequence[np.ndarray]) -> None:
        activations = self._compute_activations(pos, input_cs)

        # Boltzmann exploration
        exps = np.exp(activations - activations.max())
        cusp = rng.random() * exps.sum()
        select = int(np.searchsorted(np.cumsum(exps), cusp, side='left'))

        self._hidden_cs_temp[address2(pos, self._hidden_size.x)] = min(select, self._hidden_size.z - 1)

    def _learn(
        self,
        pos: Int2,
        rng: np.random.Generator,
        target_cs: np.ndarray,
        input_cs: Sequence[np.ndarray]
    ) -> None:
        hid = self._hidden_size

        activations = self._compute_activations(pos, input_cs)

        target_c = int(target_cs[address2(pos, hid.x)])

        for hc in range(hid.z):
            target = 1.0 if hc == target_c else 0.0

            delta = self.config.alpha * (target - sigmoid(activations[hc]))

            for vli, vl in enumerate(self._visible_layers):
                vl.add_delta(pos, hc, input_cs[vli], delta)

    # ------------------------------------------------------------------ passes

    def activate(self, cs: ComputeSystem, input_cs: Sequence[np.ndarray]) -> np.ndarray:
        """Sample a prediction for every hidden column."""
        hid = self._hidden_size

        cs.run_kernel2(lambda pos, rng: self._forward(pos, rng, input_cs), (hid.x, hid.y))

        # Publish only after the whole pass has sampled
        self._hidden_cs[:] = self._hidden_cs_temp

        return self.hidden_cs

    def learn(self, cs: ComputeSystem, target_cs: np.ndarray, input_cs: Sequence[np.ndarray]) -> None:
        """
        Teach the predictor that `input_cs` should lead to `target_cs`.

        Activations are recomputed for the given inputs, so callers usually
        pass the inputs of the previous step together with the current
        target.
        """
        if self.config.alpha == 0.0:
            return

        hid = self._hidden_size

        cs.run_kernel2(lambda pos, rng: self._learn(pos, rng, target_cs, input_cs), (hid.x, hid.y))

    # ------------------------------------------------------------------ persistence

    def write_to_stream(self, stream) -> None:
        write_int3(stream, self._hidden_size)

        write_float(stream, self.config.alpha)

        write_buffer(stream, self._hidden_cs)
        write_buffer(stream, self._hidden_activations)
        write_buffer(stream, self._hidden_counts)

        write_int(stream, len(self._visible_layers))
        for vl in self._visible_layers:
            write_visible_layer(stream, vl)

    @classmethod
    def read_from_stream(cls, stream) -> 'Predictor':
        hidden_size = read_int3(stream)
        num_columns = hidden_size.x * hidden_size.y

        config = PredictorConfig(alpha=read_float(stream))

        hidden_cs = check_length(read_buffer(stream, np.int32), num_columns, "hidden_cs")
        hidden_activations = check_length(
            read_buffer(stream, np.float32), num_columns * hidden_size.z, "hidden_activations"
        )
        hidden_counts = check_length(read_buffer(stream, np.int32), num_columns, "hidden_counts")

        num_visible_layers = read_int(stream)
        layers = [
            read_visible_layer(stream, hidden_size, WeightLayout.CELL_MAJOR)
            for _ in range(num_visible_layers)
        ]

        predictor = cls(hidden_size, layers, config, hidden_counts=hidden_counts)
        predictor._hidden_cs[:] = hidden_cs
        predictor._hidden_activations[:] = hidden_activations
        return predictor
