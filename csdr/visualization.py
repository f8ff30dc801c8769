"""
Layer Visualization Tools

Simple matplotlib-based visualization for debugging and monitoring:
- Heatmap of a layer's current output CSDR
- Symbol change rate of the output over time
- Receptive-field weights of a single hidden cell
- Scalar curves (reward, reconstruction accuracy, ...)

Usage:
    from csdr.visualization import LayerVisualizer

    viz = LayerVisualizer(actor)
    viz.start_recording()

    # ... step the layer, then after each step:
    viz.record_step(scalar=reward)

    viz.plot_lattice()
    viz.save_all("session_plots/")
"""

import logging
import os
import time
from collections import deque
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np

from .lattice import Int2

# Conditional import for matplotlib (optional dependency)
try:
    import matplotlib.pyplot as plt
    HAS_MATPLOTLIB = True
except ImportError:
    HAS_MATPLOTLIB = False
    plt = None

logger = logging.getLogger(__name__)


@dataclass
class RecordedStep:
    """Single timestep of recorded data."""
    timestamp: float
    step: int
    hidden_cs: np.ndarray
    scalar: Optional[float] = None


def _require_matplotlib() -> None:
    if not HAS_MATPLOTLIB:
        raise RuntimeError("matplotlib not installed. Install with: pip install csdr-learning[viz]")


class LayerVisualizer:
    """
    Records a layer's output lattice over time and provides matplotlib plots.

    Works with any layer exposing `hidden_size` and `hidden_cs`.
    """

    def __init__(self, layer, max_history: int = 1000):
        """
        Args:
            layer: SparseCoder, Predictor, ReplayActor or TDActor to monitor
            max_history: Maximum timesteps to keep in memory
        """
        self.layer = layer
        self.max_history = max_history
        self.history: deque = deque(maxlen=max_history)
        self.recording = False
        self._step = 0
        self._start_time = time.time()

        if not HAS_MATPLOTLIB:
            logger.warning("matplotlib not installed; plotting is unavailable")

    def start_recording(self) -> None:
        self.recording = True
        self._step = 0
        self._start_time = time.time()
        self.history.clear()

    def stop_recording(self) -> None:
        self.recording = False

    def record_step(self, scalar: Optional[float] = None) -> None:
        """Record the layer's current output (call after each layer step)."""
        if not self.recording:
            return

        self.history.append(RecordedStep(
            timestamp=time.time() - self._start_time,
            step=self._step,
            hidden_cs=np.array(self.layer.hidden_cs, dtype=np.int32),
            scalar=None if scalar is None else float(scalar)
        ))
        self._step += 1

    def get_arrays(self) -> Dict[str, np.ndarray]:
        """Convert history to numpy arrays for plotting."""
        if not self.history:
            return {}

        steps = list(self.history)
        lattices = np.stack([s.hidden_cs for s in steps])

        if len(steps) > 1:
            change_rate = np.concatenate([[0.0], (lattices[1:] != lattices[:-1]).mean(axis=1)])
        else:
            change_rate = np.zeros(1)

        return {
            'time': np.array([s.timestamp for s in steps]),
            'step': np.array([s.step for s in steps]),
            'hidden_cs': lattices,
            'change_rate': change_rate,
            'scalar': np.array([np.nan if s.scalar is None else s.scalar for s in steps]),
        }

    def lattice_image(self, hidden_cs: Optional[np.ndarray] = None) -> np.ndarray:
        """Output symbols arranged as a (height, width) image."""
        hid = self.layer.hidden_size
        if hidden_cs is None:
            hidden_cs = self.layer.hidden_cs
        # address2 puts x fastest, so rows are y
        return np.asarray(hidden_cs).reshape(hid.y, hid.x)

    def receptive_field_image(self, hidden_pos: Int2, hc: int, index: int = 0) -> np.ndarray:
        """
        Weights of one hidden cell as a (visible_depth * diam, diam) image,
        one diam x diam block per input symbol stacked vertically.
        """
        vl = self.layer.visible_layer(index)
        hidden_pos = Int2(*hidden_pos)
        offsets = np.arange(vl.weights_per_cell)
        weights = vl.weights[vl.weight_indices(vl.cell_index(hidden_pos, hc), offsets)]
        # offset = sx + sy * diam + ic * diam^2
        return weights.reshape(vl.desc.size.z * vl.diameter, vl.diameter)

    # ------------------------------------------------------------------ plots

    def plot_lattice(self, figsize: tuple = (6, 5), save_path: Optional[str] = None):
        """Heatmap of the current output CSDR."""
        _require_matplotlib()

        fig, ax = plt.subplots(figsize=figsize)
        im = ax.imshow(
            self.lattice_image(), cmap='viridis', vmin=0,
            vmax=max(1, self.layer.hidden_size.z - 1), interpolation='nearest'
        )
        ax.set_xlabel('x')
        ax.set_ylabel('y')
        ax.set_title(f'{type(self.layer).__name__} output')
        cbar = plt.colorbar(im, ax=ax)
        cbar.set_label('Symbol')

        plt.tight_layout()
        self._save(fig, save_path)
        return fig

    def plot_activity(self, figsize: tuple = (12, 4), save_path: Optional[str] = None):
        """Symbol change rate per step and the recorded scalar curve."""
        _require_matplotlib()

        data = self.get_arrays()
        if not data:
            logger.info("No data recorded yet. Call record_step() after each layer step")
            return None

        fig, axes = plt.subplots(1, 2, figsize=figsize)

        ax1 = axes[0]
        ax1.plot(data['step'], data['change_rate'], color='#3F51B5', linewidth=1.5)
        ax1.set_xlabel('Step')
        ax1.set_ylabel('Fraction of columns changed')
        ax1.set_title('Output Change Rate')
        ax1.set_ylim(0, 1)
        ax1.grid(True, alpha=0.3)

        ax2 = axes[1]
        ax2.plot(data['step'], data['scalar'], color='#FF5722', linewidth=1.5)
        ax2.set_xlabel('Step')
        ax2.set_ylabel('Value')
        ax2.set_title('Recorded Scalar')
        ax2.grid(True, alpha=0.3)

        plt.tight_layout()
        self._save(fig, save_path)
        return fig

    def plot_lattice_history(self, figsize: tuple = (14, 6), save_path: Optional[str] = None):
        """Every recorded output CSDR as one column of a heatmap over time."""
        _require_matplotlib()

        data = self.get_arrays()
        if not data:
            logger.info("No data recorded")
            return None

        fig, ax = plt.subplots(figsize=figsize)
        im = ax.imshow(data['hidden_cs'].T, aspect='auto', cmap='viridis', interpolation='nearest')
        ax.set_xlabel('Step')
        ax.set_ylabel('Column')
        ax.set_title('Output Symbols Over Time')
        cbar = plt.colorbar(im, ax=ax)
        cbar.set_label('Symbol')

        plt.tight_layout()
        self._save(fig, save_path)
        return fig

    def plot_receptive_field(
        self,
        hidden_pos: Int2,
        hc: int,
        index: int = 0,
        figsize: tuple = (4, 8),
        save_path: Optional[str] = None
    ):
        """Weights of one hidden cell toward visible layer `index`."""
        _require_matplotlib()

        fig, ax = plt.subplots(figsize=figsize)
        im = ax.imshow(self.receptive_field_image(hidden_pos, hc, index), aspect='auto',
                       cmap='RdYlBu_r', interpolation='nearest')
        ax.set_xlabel('dx')
        ax.set_ylabel('symbol * diam + dy')
        ax.set_title(f'Cell {tuple(hidden_pos)}:{hc} <- layer {index}')
        plt.colorbar(im, ax=ax)

        plt.tight_layout()
        self._save(fig, save_path)
        return fig

    def save_all(self, output_dir: str = "layer_plots") -> None:
        """Save all available plots to a directory."""
        os.makedirs(output_dir, exist_ok=True)

        timestamp = time.strftime("%Y%m%d_%H%M%S")

        for name, plot in (
            ('lattice', self.plot_lattice),
            ('activity', self.plot_activity),
            ('lattice_history', self.plot_lattice_history),
        ):
            fig = plot(save_path=f"{output_dir}/{name}_{timestamp}.png")
            if fig is not None:
                plt.close(fig)

        logger.info("Saved all plots to %s/", output_dir)

    def show(self) -> None:
        """Show all current plots (interactive mode)."""
        _require_matplotlib()
        plt.show()

    @staticmethod
    def _save(fig, save_path: Optional[str]) -> None:
        if save_path:
            fig.savefig(save_path, dpi=150, bbox_inches='tight')
            logger.info("Saved plot to %s", save_path)
