"""
Sparse Local Receptive Field Weights

Implements:
- Visible layer descriptors (input lattice size + radius)
- One weight per (hidden cell, receptive-field offset, input symbol)
- Forward accumulation over the active input symbols of a field
- Reverse lookup: which hidden columns see a given visible position

A synapse is addressed by the offset

    (ix - fx) + (iy - fy) * diam + ic * diam^2

where (fx, fy) is the *unclamped* lower corner of the hidden cell's field.
Forward, reverse and learning passes all go through `offsets()` /
`reverse_field()` below, so they always agree on which synapse is which.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np

from .errors import ConfigurationError
from .lattice import (
    FieldBounds,
    Float2,
    Int2,
    Int3,
    address2,
    field_bounds,
    in_bounds,
    project,
)

logger = logging.getLogger(__name__)


def validate_size(size, name: str = "size") -> Int3:
    """Check a lattice size is made of positive integers."""
    if len(size) != 3:
        raise ConfigurationError(f"{name} must have 3 components, got {size!r}")
    size = Int3(*(int(v) for v in size))
    if min(size) < 1:
        raise ConfigurationError(f"{name} components must be >= 1, got {tuple(size)}")
    return size


def _scale(numerator: Int3, denominator: Int3) -> Float2:
    """Component-wise size ratio, rounded to float32."""
    return Float2(
        float(np.float32(numerator.x) / np.float32(denominator.x)),
        float(np.float32(numerator.y) / np.float32(denominator.y))
    )


@dataclass(frozen=True)
class VisibleLayerDesc:
    """Input lattice (width, height, column depth) and its receptive-field radius."""
    size: Int3 = Int3(4, 4, 16)
    radius: int = 2

    def __post_init__(self):
        object.__setattr__(self, 'size', validate_size(self.size, "visible layer size"))
        if int(self.radius) < 0:
            raise ConfigurationError(f"radius must be >= 0, got {self.radius}")
        object.__setattr__(self, 'radius', int(self.radius))

    @property
    def diameter(self) -> int:
        return self.radius * 2 + 1

    @property
    def num_columns(self) -> int:
        return self.size.x * self.size.y


class WeightLayout(Enum):
    """Order of the flat weight buffer."""
    CELL_MAJOR = "cell_major"      # hidden_cell * (diam^2 * depth) + offset
    OFFSET_MAJOR = "offset_major"  # address4(hx, hy, hc, offset)


@dataclass
class ReverseField:
    """Hidden columns whose receptive field contains one visible position."""
    columns: np.ndarray        # flat hidden column indices
    spatial_offsets: np.ndarray  # (vx - fx) + (vy - fy) * diam for each column

    @property
    def count(self) -> int:
        return len(self.columns)


class LocalReceptiveFieldWeights:
    """
    Weights connecting one visible layer to a hidden lattice.

    Every hidden cell owns `diam^2 * visible_depth` weights, so the buffer
    holds exactly `num_hidden * diam^2 * visible_depth` values.
    """

    def __init__(
        self,
        hidden_size: Int3,
        desc: VisibleLayerDesc,
        layout: WeightLayout = WeightLayout.OFFSET_MAJOR,
        weights: Optional[np.ndarray] = None
    ):
        self.hidden_size = validate_size(hidden_size, "hidden size")
        self.desc = desc
        self.layout = layout

        vis = desc.size
        hid = self.hidden_size

        # Projection constants, float32 to match the persisted stream exactly
        self.visible_to_hidden = _scale(hid, vis)
        self.hidden_to_visible = _scale(vis, hid)

        # Smallest hidden-lattice radius covering every hidden column that can see a visible cell
        self.reverse_radii = Int2(
            int(math.ceil(np.float32(self.visible_to_hidden.x) * np.float32(desc.radius)) + 1),
            int(math.ceil(np.float32(self.visible_to_hidden.y) * np.float32(desc.radius)) + 1)
        )

        self.diameter = desc.diameter
        self.diameter2 = self.diameter * self.diameter

        self.num_hidden_columns = hid.x * hid.y
        self.num_hidden = self.num_hidden_columns * hid.z
        self.weights_per_cell = self.diameter2 * vis.z

        if layout == WeightLayout.CELL_MAJOR:
            self._cell_stride = self.weights_per_cell
            self._offset_stride = 1
        else:
            self._cell_stride = 1
            self._offset_stride = self.num_hidden

        if weights is None:
            weights = np.zeros(self.num_weights, dtype=np.float32)
        else:
            weights = np.asarray(weights, dtype=np.float32)
            if weights.shape != (self.num_weights,):
                raise ConfigurationError(
                    f"weight buffer has {weights.size} values, expected {self.num_weights}"
                )
        self.weights = weights

        self._reverse_cache: List[Optional[ReverseField]] = [None] * desc.num_columns

    @property
    def num_weights(self) -> int:
        return self.num_hidden * self.weights_per_cell

    def initialize_uniform(self, rng: np.random.Generator, low: float, high: float) -> None:
        self.weights[:] = rng.uniform(low, high, size=self.num_weights).astype(np.float32)

    # ------------------------------------------------------------------ addressing

    def field_bounds(self, hidden_pos: Int2) -> FieldBounds:
        """Receptive field of a hidden column on the visible lattice."""
        center = project(hidden_pos, self.hidden_to_visible)
        return field_bounds(center, self.desc.radius, self.desc.size[:2])

    def cell_index(self, hidden_pos: Int2, hc: int) -> int:
        hid = self.hidden_size
        return hidden_pos[0] + hidden_pos[1] * hid.x + hc * hid.x * hid.y

    def column_cells(self, hidden_pos: Int2) -> np.ndarray:
        """Flat hidden cell indices of every symbol in one hidden column."""
        hid = self.hidden_size
        base = hidden_pos[0] + hidden_pos[1] * hid.x
        return base + np.arange(hid.z) * hid.x * hid.y

    def offsets(self, bounds: FieldBounds, visible_cs: np.ndarray) -> np.ndarray:
        """Synapse offsets of the active input symbols inside a field."""
        xs, ys = bounds.grid()
        cs = visible_cs[xs + ys * self.desc.size.x]
        return (xs - bounds.lower.x) + (ys - bounds.lower.y) * self.diameter + cs * self.diameter2

    def weight_indices(self, cells, offsets) -> np.ndarray:
        """Flat weight indices for hidden cell(s) and synapse offset(s) (broadcasting)."""
        return np.asarray(cells) * self._cell_stride + np.asarray(offsets) * self._offset_stride

    # ------------------------------------------------------------------ forward

    def count(self, hidden_pos: Int2) -> int:
        """Number of visible columns inside a hidden column's clamped field."""
        return self.field_bounds(hidden_pos).count

    def activations(self, hidden_pos: Int2, visible_cs: np.ndarray) -> np.ndarray:
        """Summed weights for every symbol of a hidden column given the active inputs."""
        offsets = self.offsets(self.field_bounds(hidden_pos), visible_cs)
        idx = self.weight_indices(self.column_cells(hidden_pos)[:, None], offsets[None, :])
        return self.weights[idx].sum(axis=1)

    def activation(self, hidden_pos: Int2, hc: int, visible_cs: np.ndarray) -> float:
        offsets = self.offsets(self.field_bounds(hidden_pos), visible_cs)
        return float(self.weights[self.weight_indices(self.cell_index(hidden_pos, hc), offsets)].sum())

    def add_delta(self, hidden_pos: Int2, hc: int, visible_cs: np.ndarray, delta: float) -> None:
        """Add `delta` to the synapses of one hidden cell that see the active inputs."""
        offsets = self.offsets(self.field_bounds(hidden_pos), visible_cs)
        # Offsets within one field are distinct, so plain fancy-index add is safe
        self.weights[self.weight_indices(self.cell_index(hidden_pos, hc), offsets)] += np.float32(delta)

    # ------------------------------------------------------------------ reverse

    def reverse_field(self, visible_pos: Int2) -> ReverseField:
        """Hidden columns whose receptive field contains `visible_pos` (cached)."""
        vi = address2(visible_pos, self.desc.size.x)
        cached = self._reverse_cache[vi]
        if cached is not None:
            return cached

        hid = self.hidden_size
        center = project(visible_pos, self.visible_to_hidden)
        search = field_bounds(center, self.reverse_radii, (hid.x, hid.y))

        columns = []
        spatial = []
        for hidden_pos in search.positions():
            bounds = self.field_bounds(hidden_pos)
            upper = Int2(bounds.lower.x + self.diameter, bounds.lower.y + self.diameter)
            if in_bounds(visible_pos, bounds.lower, upper):
                columns.append(address2(hidden_pos, hid.x))
                spatial.append((visible_pos[0] - bounds.lower.x) + (visible_pos[1] - bounds.lower.y) * self.diameter)

        rf = ReverseField(
            columns=np.asarray(columns, dtype=np.int64),
            spatial_offsets=np.asarray(spatial, dtype=np.int64)
        )
        self._reverse_cache[vi] = rf
        return rf

    def reverse_indices(self, visible_pos: Int2, hidden_cs: np.ndarray) -> Tuple[np.ndarray, int]:
        """
        Weight indices linking the winning cell of every contributing hidden
        column to each candidate symbol at `visible_pos`.

        Returns (indices of shape (visible_depth, n), n).
        """
        rf = self.reverse_field(visible_pos)
        hid = self.hidden_size
        cells = rf.columns + hidden_cs[rf.columns].astype(np.int64) * hid.x * hid.y
        symbols = np.arange(self.desc.size.z)[:, None]
        offsets = rf.spatial_offsets[None, :] + symbols * self.diameter2
        return self.weight_indices(cells[None, :], offsets), rf.count

    def __getstate__(self):
        state = self.__dict__.copy()
        state['_reverse_cache'] = [None] * self.desc.num_columns
        return state
