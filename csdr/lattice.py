"""
Lattice Coordinates and Addressing

Implements:
- Integer/float coordinate tuples for 2D, 3D and 4D lattices
- Flat buffer addressing (x fastest, then y, then z, then w)
- Affine projection between a visible and a hidden lattice
- Clamped receptive-field iteration bounds

Key insight: every buffer in the system is a flat array, so all of the
geometry reduces to a handful of pure index functions. Keeping them in one
place is what keeps the forward and reverse passes addressing the same
synapse.
"""

from dataclasses import dataclass
from typing import Iterator, NamedTuple

import numpy as np


class Int2(NamedTuple):
    x: int
    y: int


class Int3(NamedTuple):
    x: int
    y: int
    z: int


class Int4(NamedTuple):
    x: int
    y: int
    z: int
    w: int


class Float2(NamedTuple):
    x: float
    y: float


def address2(pos: Int2, width: int) -> int:
    """Flat index of a 2D position in a lattice of the given width."""
    return pos[0] + pos[1] * width


def address3(pos: Int3, size: Int2) -> int:
    """Flat index of a 3D position; size is the (width, height) plane."""
    return pos[0] + pos[1] * size[0] + pos[2] * size[0] * size[1]


def address4(pos: Int4, size: Int3) -> int:
    """Flat index of a 4D position; size is the (x, y, z) extent."""
    dxy = size[0] * size[1]
    return pos[0] + pos[1] * size[0] + pos[2] * dxy + pos[3] * dxy * size[2]


def project(pos: Int2, scale: Float2) -> Int2:
    """Project a lattice position onto another lattice (rounded to nearest, in float32)."""
    half = np.float32(0.5)
    return Int2(
        int(np.float32(pos[0]) * np.float32(scale[0]) + half),
        int(np.float32(pos[1]) * np.float32(scale[1]) + half)
    )


def in_bounds(pos: Int2, lower: Int2, upper: Int2) -> bool:
    """True when lower <= pos < upper component-wise."""
    return lower[0] <= pos[0] < upper[0] and lower[1] <= pos[1] < upper[1]


@dataclass(frozen=True)
class FieldBounds:
    """
    Square neighbourhood around a centre, clipped to a lattice.

    `lower` is the unclamped corner used for synapse offsets; `iter_lower`
    and `iter_upper` (inclusive) are the clamped bounds actually visited.
    """
    lower: Int2
    iter_lower: Int2
    iter_upper: Int2

    @property
    def count(self) -> int:
        """Number of in-bounds positions (zero if the field misses the lattice)."""
        nx = self.iter_upper.x - self.iter_lower.x + 1
        ny = self.iter_upper.y - self.iter_lower.y + 1
        return max(0, nx) * max(0, ny)

    def positions(self) -> Iterator[Int2]:
        for x in range(self.iter_lower.x, self.iter_upper.x + 1):
            for y in range(self.iter_lower.y, self.iter_upper.y + 1):
                yield Int2(x, y)

    def grid(self):
        """Return (xs, ys) as flattened integer arrays over the clamped field."""
        xs = np.arange(self.iter_lower.x, self.iter_upper.x + 1)
        ys = np.arange(self.iter_lower.y, self.iter_upper.y + 1)
        gx, gy = np.meshgrid(xs, ys, indexing='ij')
        return gx.ravel(), gy.ravel()


def field_bounds(center: Int2, radius, size: Int2) -> FieldBounds:
    """
    Receptive field of the given radius around `center`, clamped to `size`.

    `radius` may be an int or an (rx, ry) pair.
    """
    if isinstance(radius, tuple):
        rx, ry = radius
    else:
        rx = ry = radius

    lower = Int2(center[0] - rx, center[1] - ry)
    iter_lower = Int2(max(0, lower.x), max(0, lower.y))
    iter_upper = Int2(min(size[0] - 1, center[0] + rx), min(size[1] - 1, center[1] + ry))

    return FieldBounds(lower=lower, iter_lower=iter_lower, iter_upper=iter_upper)
