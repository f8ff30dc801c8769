"""
Tests for the sparse local receptive-field weight store
"""

import numpy as np
import pytest

from csdr import ConfigurationError, Int2, Int3, LocalReceptiveFieldWeights, VisibleLayerDesc, WeightLayout
from csdr.lattice import address2


def _positions(width, height):
    return [Int2(x, y) for x in range(width) for y in range(height)]


class TestVisibleLayerDesc:
    def test_defaults(self):
        desc = VisibleLayerDesc()
        assert desc.size == Int3(4, 4, 16)
        assert desc.radius == 2
        assert desc.diameter == 5
        assert desc.num_columns == 16

    def test_invalid_size(self):
        with pytest.raises(ConfigurationError):
            VisibleLayerDesc(size=Int3(0, 4, 4))
        with pytest.raises(ConfigurationError):
            VisibleLayerDesc(size=(4, 4))

    def test_negative_radius(self):
        with pytest.raises(ConfigurationError):
            VisibleLayerDesc(radius=-1)


class TestWeightStore:
    @pytest.mark.parametrize("layout", list(WeightLayout))
    def test_weight_count(self, layout):
        desc = VisibleLayerDesc(size=Int3(6, 5, 3), radius=2)
        vl = LocalReceptiveFieldWeights(Int3(4, 3, 7), desc, layout=layout)
        assert vl.num_weights == 4 * 3 * 7 * 25 * 3
        assert vl.weights.shape == (vl.num_weights,)

    @pytest.mark.parametrize("layout", list(WeightLayout))
    def test_every_synapse_has_a_unique_index(self, layout):
        desc = VisibleLayerDesc(size=Int3(3, 3, 2), radius=1)
        hidden = Int3(2, 2, 3)
        vl = LocalReceptiveFieldWeights(hidden, desc, layout=layout)

        cells = np.arange(vl.num_hidden)[:, None]
        offsets = np.arange(vl.weights_per_cell)[None, :]
        idx = vl.weight_indices(cells, offsets).ravel()

        assert sorted(idx.tolist()) == list(range(vl.num_weights))

    def test_cell_major_and_offset_major_strides(self):
        desc = VisibleLayerDesc(size=Int3(3, 3, 2), radius=1)
        hidden = Int3(2, 2, 3)
        cell_major = LocalReceptiveFieldWeights(hidden, desc, layout=WeightLayout.CELL_MAJOR)
        offset_major = LocalReceptiveFieldWeights(hidden, desc, layout=WeightLayout.OFFSET_MAJOR)

        assert cell_major.weight_indices(5, 7) == 5 * 18 + 7
        assert offset_major.weight_indices(5, 7) == 5 + 7 * 12

    def test_wrong_buffer_size_rejected(self):
        desc = VisibleLayerDesc(size=Int3(3, 3, 2), radius=1)
        with pytest.raises(ConfigurationError):
            LocalReceptiveFieldWeights(Int3(2, 2, 2), desc, weights=np.zeros(3))

    def test_ones_weights_activate_to_field_count(self):
        desc = VisibleLayerDesc(size=Int3(5, 5, 4), radius=2)
        hidden = Int3(5, 5, 3)
        vl = LocalReceptiveFieldWeights(hidden, desc, weights=np.ones(5 * 5 * 3 * 25 * 4))
        visible_cs = np.arange(25, dtype=np.int32) % 4

        for pos in _positions(5, 5):
            np.testing.assert_allclose(vl.activations(pos, visible_cs), np.full(3, vl.count(pos)))

        # Corner field is clipped to 3x3, interior is the full 5x5
        assert vl.count(Int2(0, 0)) == 9
        assert vl.count(Int2(2, 2)) == 25

    def test_radius_larger_than_lattice(self):
        desc = VisibleLayerDesc(size=Int3(2, 2, 2), radius=4)
        vl = LocalReceptiveFieldWeights(Int3(2, 2, 2), desc, weights=np.ones(2 * 2 * 2 * 81 * 2))
        visible_cs = np.zeros(4, dtype=np.int32)

        for pos in _positions(2, 2):
            assert vl.count(pos) == 4
            np.testing.assert_allclose(vl.activations(pos, visible_cs), [4.0, 4.0])

    def test_offsets_use_unclamped_corner(self):
        desc = VisibleLayerDesc(size=Int3(4, 4, 3), radius=1)
        vl = LocalReceptiveFieldWeights(Int3(4, 4, 2), desc)
        visible_cs = np.full(16, 2, dtype=np.int32)

        bounds = vl.field_bounds(Int2(0, 0))
        offsets = vl.offsets(bounds, visible_cs)

        # (ix + 1) + (iy + 1) * 3 + 2 * 9 for ix, iy in {0, 1}
        expected = sorted((ix + 1) + (iy + 1) * 3 + 18 for ix in range(2) for iy in range(2))
        assert sorted(offsets.tolist()) == expected

    def test_add_delta_touches_only_active_synapses_of_one_cell(self, make_csdr):
        desc = VisibleLayerDesc(size=Int3(4, 4, 3), radius=1)
        vl = LocalReceptiveFieldWeights(Int3(3, 3, 2), desc, layout=WeightLayout.CELL_MAJOR)
        visible_cs = make_csdr(desc.size)

        pos = Int2(1, 1)
        vl.add_delta(pos, 1, visible_cs, 0.5)

        assert np.count_nonzero(vl.weights) == vl.count(pos)
        assert vl.activation(pos, 1, visible_cs) == pytest.approx(0.5 * vl.count(pos))
        assert vl.activation(pos, 0, visible_cs) == 0.0


class TestReverseField:
    @pytest.mark.parametrize("hidden,visible,radius", [
        (Int3(3, 5, 2), Int3(7, 4, 3), 2),
        (Int3(4, 4, 2), Int3(4, 4, 2), 0),
        (Int3(8, 8, 2), Int3(3, 3, 2), 1),
        (Int3(2, 2, 2), Int3(9, 6, 2), 3),
    ])
    def test_reverse_matches_forward(self, hidden, visible, radius):
        desc = VisibleLayerDesc(size=visible, radius=radius)
        vl = LocalReceptiveFieldWeights(hidden, desc)

        forward_links = 0
        for hidden_pos in _positions(hidden.x, hidden.y):
            bounds = vl.field_bounds(hidden_pos)
            column = address2(hidden_pos, hidden.x)

            for visible_pos in bounds.positions():
                rf = vl.reverse_field(visible_pos)
                matches = np.flatnonzero(rf.columns == column)
                assert matches.size == 1

                expected = (visible_pos.x - bounds.lower.x) + (visible_pos.y - bounds.lower.y) * vl.diameter
                assert rf.spatial_offsets[matches[0]] == expected

                forward_links += 1

        reverse_links = sum(vl.reverse_field(p).count for p in _positions(visible.x, visible.y))
        assert reverse_links == forward_links

    def test_reverse_indices_address_winning_cells(self):
        desc = VisibleLayerDesc(size=Int3(3, 3, 2), radius=1)
        hidden = Int3(3, 3, 4)
        vl = LocalReceptiveFieldWeights(hidden, desc)
        vl.weights[:] = np.arange(vl.num_weights, dtype=np.float32)

        hidden_cs = np.arange(9, dtype=np.int32) % 4
        visible_pos = Int2(1, 1)

        idx, count = vl.reverse_indices(visible_pos, hidden_cs)
        assert idx.shape == (2, count)
        assert count == 9

        # Forward view: hidden column at (0, 0) sees (1, 1) at spatial offset (2 + 2 * 3)
        column = 0
        cell = column + int(hidden_cs[column]) * 9
        k = int(np.flatnonzero(vl.reverse_field(visible_pos).columns == column)[0])
        for symbol in range(2):
            assert idx[symbol, k] == vl.weight_indices(cell, 8 + symbol * 9)

    def test_reverse_cache_dropped_on_pickle(self):
        import pickle

        desc = VisibleLayerDesc(size=Int3(3, 3, 2), radius=1)
        vl = LocalReceptiveFieldWeights(Int3(3, 3, 2), desc)
        vl.reverse_field(Int2(0, 0))

        restored = pickle.loads(pickle.dumps(vl))
        assert all(entry is None for entry in restored._reverse_cache)
        assert restored.reverse_field(Int2(0, 0)).count == vl.reverse_field(Int2(0, 0)).count


class TestProjectionConstants:
    def test_scales_are_float32_exact(self):
        weights = LocalReceptiveFieldWeights(Int3(6, 1, 4), VisibleLayerDesc(size=Int3(5, 1, 3), radius=0))
        for value in weights.visible_to_hidden + weights.hidden_to_visible:
            assert float(np.float32(value)) == value

    def test_hidden_column_projects_with_float32_rounding(self):
        weights = LocalReceptiveFieldWeights(Int3(6, 1, 4), VisibleLayerDesc(size=Int3(5, 1, 3), radius=0))
        # 3 * float32(5/6) rounds up to exactly 2.5
        assert weights.field_bounds(Int2(3, 0)).lower == Int2(3, 0)
