"""
Sparse Coder

Implements:
- Columnar sparse coding: one or more input CSDRs -> one hidden CSDR
- Explaining-away: each pass subtracts what the current code already
  reconstructs before re-selecting winners
- Reconstruction of every input column from the hidden code
- Delta-rule learning of the reconstruction weights

Key insight: a hidden cell's weights are used twice - forward, to score
how well it matches the input, and backward, as its vote for each input
symbol. Training the backward vote toward the observed input is enough to
make the forward scores meaningful, because both read the same synapses.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np

from .compute_system import ComputeSystem
from .config import SparseCoderConfig
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


class SparseCoder:
    """
    Sparse coding layer (CSDR -> compressed CSDR).

    Weights use the 4D (hx, hy, hc, offset) layout so the reconstruction
    pass can address them from the visible side.
    """

    def __init__(
        self,
        hidden_size: Int3,
        visible_layers: List[LocalReceptiveFieldWeights],
        config: Optional[SparseCoderConfig] = None
    ):
        self.config = config or SparseCoderConfig()
        self.config.validate()

        self._hidden_size = validate_size(hidden_size, "hidden size")
        self._visible_layers = visible_layers

        num_columns = self._hidden_size.x * self._hidden_size.y

        self._hidden_cs = np.zeros(num_columns, dtype=np.int32)
        self._hidden_activations = np.zeros(num_columns * self._hidden_size.z, dtype=np.float32)
        self._recon_cs = [np.zeros(vl.desc.num_columns, dtype=np.int32) for vl in visible_layers]

    @classmethod
    def create_random(
        cls,
        cs: ComputeSystem,
        hidden_size: Int3,
        visible_layer_descs: Sequence[VisibleLayerDesc],
        config: Optional[SparseCoderConfig] = None
    ) -> 'SparseCoder':
        """
        Create a sparse coder with weights drawn from U(0.99, 1.0).

        Args:
            cs: ComputeSystem supplying the random generator
            hidden_size: (width, height, column depth) of the hidden CSDR
            visible_layer_descs: One descriptor per input CSDR
            config: Hyperparameters (defaults if omitted)
        """
        hidden_size = validate_size(hidden_size, "hidden size")

        layers = []
        for desc in visible_layer_descs:
            vl = LocalReceptiveFieldWeights(hidden_size, desc, layout=WeightLayout.OFFSET_MAJOR)
            vl.initialize_uniform(cs.rng, 0.99, 1.0)
            layers.append(vl)

        logger.debug(
            "SparseCoder: hidden=%s visible_layers=%d weights=%d",
            tuple(hidden_size), len(layers), sum(vl.num_weights for vl in layers)
        )
        return cls(hidden_size, layers, config)

    # ------------------------------------------------------------------ accessors

    @property
    def hidden_size(self) -> Int3:
        return self._hidden_size

    @property
    def hidden_cs(self) -> np.ndarray:
        """Winning symbol per hidden column (read-only view)."""
        view = self._hidden_cs.view()
        view.flags.writeable = False
        return view

    @property
    def hidden_activations(self) -> np.ndarray:
        return self._hidden_activations

    @property
    def num_visible_layers(self) -> int:
        return len(self._visible_layers)

    def visible_layer(self, index: int) -> LocalReceptiveFieldWeights:
        return self._visible_layers[index]

    def visible_layer_desc(self, index: int) -> VisibleLayerDesc:
        return self._visible_layers[index].desc

    def weights(self, index: int) -> np.ndarray:
        return self._visible_layers[index].weights

    def recon_cs(self, index: int) -> np.ndarray:
        """Reconstructed symbol per column of one visible layer."""
        return self._recon_cs[index]

    # ------------------------------------------------------------------ kernels

    def _forward(self, pos: Int2, rng, input_cs: Sequence[np.ndarray], first_iter: bool) -> None:
        hid = self._hidden_size

        input_activation = np.zeros(hid.z, dtype=np.float32)
        recon_activation = np.zeros(hid.z, dtype=np.float32)

        for vli, vl in enumerate(self._visible_layers):
            input_activation += vl.activations(pos, input_cs[vli])

            if not first_iter:
                recon_activation += vl.activations(pos, self._recon_cs[vli])

        cells = pos.x + pos.y * hid.x + np.arange(hid.z) * hid.x * hid.y

        if first_iter:
            self._hidden_activations[cells] = input_activation
        else:
            self._hidden_activations[cells] += input_activation - recon_activation

        # argmax takes the first maximum, i.e. ties go to the lowest symbol
        self._hidden_cs[address2(pos, hid.x)] = int(np.argmax(self._hidden_activations[cells]))

    def _column_means(self, vl: LocalReceptiveFieldWeights, pos: Int2):
        idx, count = vl.reverse_indices(pos, self._hidden_cs)
        means = vl.weights[idx].sum(axis=1) / max(1, count)
        return idx, means

    def _backward(self, pos: Int2, rng, vli: int) -> None:
        vl = self._visible_layers[vli]

        _, means = self._column_means(vl, pos)

        self._recon_cs[vli][address2(pos, vl.desc.size.x)] = int(np.argmax(means))

    def _learn(self, pos: Int2, rng, input_cs: Sequence[np.ndarray], vli: int) -> None:
        vl = self._visible_layers[vli]

        input_c = int(input_cs[vli][address2(pos, vl.desc.size.x)])

        idx, means = self._column_means(vl, pos)

        targets = np.zeros(vl.desc.size.z, dtype=np.float32)
        targets[input_c] = 1.0

        deltas = self.config.alpha * (targets - means)

        # Same synapses that produced the means; rows and columns are distinct weights
        vl.weights[idx] += deltas[:, None].astype(np.float32)

    # ------------------------------------------------------------------ passes

    def activate(self, cs: ComputeSystem, input_cs: Sequence[np.ndarray]) -> np.ndarray:
        """
        Encode the inputs: explain_iters rounds of forward + reconstruction.

        Returns the hidden CSDR.
        """
        hid = self._hidden_size

        for it in range(self.config.explain_iters):
            first_iter = it == 0

            cs.run_kernel2(
                lambda pos, rng: self._forward(pos, rng, input_cs, first_iter),
                (hid.x, hid.y)
            )

            for vli, vl in enumerate(self._visible_layers):
                cs.run_kernel2(
                    lambda pos, rng, vli=vli: self._backward(pos, rng, vli),
                    (vl.desc.size.x, vl.desc.size.y)
                )

        return self.hidden_cs

    def learn(self, cs: ComputeSystem, input_cs: Sequence[np.ndarray]) -> None:
        """Move reconstruction weights toward the observed inputs."""
        for vli, vl in enumerate(self._visible_layers):
            cs.run_kernel2(
                lambda pos, rng, vli=vli: self._learn(pos, rng, input_cs, vli),
                (vl.desc.size.x, vl.desc.size.y)
            )

    def step(self, cs: ComputeSystem, input_cs: Sequence[np.ndarray], learn_enabled: bool = True) -> np.ndarray:
        self.activate(cs, input_cs)

        if learn_enabled:
            self.learn(cs, input_cs)

        return self.hidden_cs

    # ------------------------------------------------------------------ persistence

    def write_to_stream(self, stream) -> None:
        write_int3(stream, self._hidden_size)

        write_float(stream, self.config.alpha)
        write_int(stream, self.config.explain_iters)

        write_buffer(stream, self._hidden_cs)

        write_int(stream, len(self._visible_layers))
        for vl in self._visible_layers:
            write_visible_layer(stream, vl)

    @classmethod
    def read_from_stream(cls, stream) -> 'SparseCoder':
        hidden_size = read_int3(stream)

        config = SparseCoderConfig(alpha=read_float(stream), explain_iters=read_int(stream))

        hidden_cs = read_buffer(stream, np.int32)

        num_visible_layers = read_int(stream)
        layers = [
            read_visible_layer(stream, hidden_size, WeightLayout.OFFSET_MAJOR)
            for _ in range(num_visible_layers)
        ]

        sc = cls(hidden_size, layers, config)
        sc._hidden_cs[:] = check_length(hidden_cs, hidden_size.x * hidden_size.y, "hidden_cs")
        return sc
