"""
Layer Persistence

Two ways to keep learned state:

- Binary layer streams: fixed field order, little-endian, no version
  header. Scalars are int32/float32, buffers are an int32 length followed
  by the raw elements. Each layer writes hidden size, hyperparameters,
  hidden buffers, then one block per visible layer (descriptor, projection
  constants, reverse radii, weights), then any history it keeps.
- Snapshots: the full Python object graph (several layers, counters,
  the ComputeSystem) via dill.

`LayerPersistence` manages files on disk: metadata sidecars and backup
rotation.
"""

import json
import logging
import os
import struct
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Union

import dill
import numpy as np

from .errors import StreamFormatError
from .lattice import Float2, Int2, Int3
from .receptive_field import LocalReceptiveFieldWeights, VisibleLayerDesc, WeightLayout

logger = logging.getLogger(__name__)

FORMAT_VERSION = "1.0"

_INT = struct.Struct('<i')
_FLOAT = struct.Struct('<f')


# =============================================================================
# STREAM PRIMITIVES
# =============================================================================

def _read_exact(stream: BinaryIO, n: int) -> bytes:
    data = stream.read(n)
    if len(data) != n:
        raise StreamFormatError(f"Unexpected end of stream: wanted {n} bytes, got {len(data)}")
    return data


def write_int(stream: BinaryIO, value: int) -> None:
    stream.write(_INT.pack(int(value)))


def read_int(stream: BinaryIO) -> int:
    return _INT.unpack(_read_exact(stream, _INT.size))[0]


def write_float(stream: BinaryIO, value: float) -> None:
    stream.write(_FLOAT.pack(float(value)))


def read_float(stream: BinaryIO) -> float:
    return _FLOAT.unpack(_read_exact(stream, _FLOAT.size))[0]


def write_int2(stream: BinaryIO, value: Int2) -> None:
    for v in value:
        write_int(stream, v)


def read_int2(stream: BinaryIO) -> Int2:
    return Int2(read_int(stream), read_int(stream))


def write_int3(stream: BinaryIO, value: Int3) -> None:
    for v in value:
        write_int(stream, v)


def read_int3(stream: BinaryIO) -> Int3:
    return Int3(read_int(stream), read_int(stream), read_int(stream))


def write_float2(stream: BinaryIO, value: Float2) -> None:
    for v in value:
        write_float(stream, v)


def read_float2(stream: BinaryIO) -> Float2:
    return Float2(read_float(stream), read_float(stream))


def write_buffer(stream: BinaryIO, buffer: np.ndarray) -> None:
    """Length prefix followed by raw little-endian elements."""
    if np.issubdtype(buffer.dtype, np.integer):
        data = np.ascontiguousarray(buffer, dtype='<i4')
    else:
        data = np.ascontiguousarray(buffer, dtype='<f4')
    write_int(stream, data.size)
    stream.write(data.tobytes())


def read_buffer(stream: BinaryIO, dtype) -> np.ndarray:
    """Read a buffer written by `write_buffer`; dtype is np.int32 or np.float32."""
    length = read_int(stream)
    if length < 0:
        raise StreamFormatError(f"Negative buffer length {length}")
    wire = '<i4' if np.issubdtype(np.dtype(dtype), np.integer) else '<f4'
    raw = _read_exact(stream, length * 4)
    return np.frombuffer(raw, dtype=wire).astype(dtype)


# =============================================================================
# VISIBLE LAYER BLOCKS
# =============================================================================

def write_visible_layer(stream: BinaryIO, store: LocalReceptiveFieldWeights) -> None:
    write_int3(stream, store.desc.size)
    write_int(stream, store.desc.radius)
    write_float2(stream, store.visible_to_hidden)
    write_float2(stream, store.hidden_to_visible)
    write_int2(stream, store.reverse_radii)
    write_buffer(stream, store.weights)


def read_visible_layer(
    stream: BinaryIO,
    hidden_size: Int3,
    layout: WeightLayout
) -> LocalReceptiveFieldWeights:
    desc = VisibleLayerDesc(size=read_int3(stream), radius=read_int(stream))
    visible_to_hidden = read_float2(stream)
    hidden_to_visible = read_float2(stream)
    reverse_radii = read_int2(stream)
    weights = read_buffer(stream, np.float32)

    store = LocalReceptiveFieldWeights(hidden_size, desc, layout=layout)
    if weights.size != store.num_weights:
        raise StreamFormatError(
            f"Weight buffer has {weights.size} values, expected {store.num_weights}"
        )
    store.weights = weights
    store.visible_to_hidden = visible_to_hidden
    store.hidden_to_visible = hidden_to_visible
    store.reverse_radii = reverse_radii
    return store


def check_length(buffer: np.ndarray, expected: int, name: str) -> np.ndarray:
    if buffer.size != expected:
        raise StreamFormatError(f"{name} has {buffer.size} values, expected {expected}")
    return buffer


# =============================================================================
# FILE MANAGEMENT
# =============================================================================

def _layer_classes() -> Dict[str, type]:
    # Imported here: the layer modules depend on this one for their stream codecs
    from .actor import ReplayActor, TDActor
    from .predictor import Predictor
    from .sparse_coder import SparseCoder

    return {cls.__name__: cls for cls in (SparseCoder, Predictor, ReplayActor, TDActor)}


class LayerPersistence:
    """
    Saves and loads single layers in the binary stream format.

    Features:
    - JSON metadata sidecar next to each save (layer class, time, size)
    - Backup rotation of an existing file before it is overwritten
    - Listing of saves, newest first
    """

    def __init__(self, save_directory: Union[str, Path] = "./layer_saves", max_backups: int = 5):
        self.save_directory = Path(save_directory)
        self.save_directory.mkdir(parents=True, exist_ok=True)
        self.max_backups = max_backups
        self._save_count = 0

    def save(
        self,
        layer,
        filepath: Optional[Union[str, Path]] = None,
        create_backup: bool = True
    ) -> str:
        """
        Write a layer to disk.

        Args:
            layer: SparseCoder, Predictor, ReplayActor or TDActor
            filepath: Target file; defaults to a timestamped file in save_directory
            create_backup: Rotate an existing file to .backup1 first

        Returns:
            Path of the written file
        """
        if filepath is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
            filepath = self.save_directory / f"{type(layer).__name__.lower()}_{timestamp}.csdr"
        else:
            filepath = Path(filepath)

        if create_backup and filepath.exists():
            self._rotate_backups(filepath)

        with open(filepath, 'wb') as f:
            layer.write_to_stream(f)

        self._save_count += 1

        with open(self._meta_path(filepath), 'w') as f:
            json.dump({
                'version': FORMAT_VERSION,
                'layer_class': type(layer).__name__,
                'saved_at': datetime.now().isoformat(),
                'python_version': f"{sys.version_info.major}.{sys.version_info.minor}",
                'save_count': self._save_count,
                'file_size_bytes': os.path.getsize(filepath),
            }, f, indent=2)

        logger.info("Saved %s to %s", type(layer).__name__, filepath)
        return str(filepath)

    def load(self, filepath: Union[str, Path], layer_class: Optional[type] = None):
        """
        Read a layer back.

        Args:
            filepath: File written by `save`
            layer_class: Layer type; read from the metadata sidecar when omitted

        Returns:
            The reconstructed layer
        """
        filepath = Path(filepath)

        if not filepath.exists():
            raise FileNotFoundError(f"Save file not found: {filepath}")

        if layer_class is None:
            meta = self.read_metadata(filepath)
            name = meta.get('layer_class')
            classes = _layer_classes()
            if name not in classes:
                raise StreamFormatError(f"Cannot determine layer class for {filepath}")
            layer_class = classes[name]

        with open(filepath, 'rb') as f:
            layer = layer_class.read_from_stream(f)

        logger.info("Loaded %s from %s", layer_class.__name__, filepath)
        return layer

    def read_metadata(self, filepath: Union[str, Path]) -> Dict[str, Any]:
        meta_path = self._meta_path(Path(filepath))
        if not meta_path.exists():
            return {}
        with open(meta_path) as f:
            return json.load(f)

    def list_saves(self) -> List[Dict[str, Any]]:
        """All layer files in save_directory, newest first."""
        saves = []
        for path in self.save_directory.glob("*.csdr"):
            saves.append({
                'path': str(path),
                'name': path.stem,
                'meta': self.read_metadata(path)
            })
        return sorted(saves, key=lambda s: s['meta'].get('saved_at', ''), reverse=True)

    def get_latest_save(self) -> Optional[str]:
        saves = self.list_saves()
        if saves:
            return saves[0]['path']
        return None

    @staticmethod
    def _meta_path(filepath: Path) -> Path:
        return filepath.with_suffix('.meta.json')

    def _rotate_backups(self, filepath: Path) -> None:
        for i in range(self.max_backups - 1, 0, -1):
            old_backup = filepath.with_suffix(f'.backup{i}')
            new_backup = filepath.with_suffix(f'.backup{i + 1}')
            if old_backup.exists():
                if i == self.max_backups - 1 and new_backup.exists():
                    new_backup.unlink()
                old_backup.rename(new_backup)

        if filepath.exists():
            filepath.rename(filepath.with_suffix('.backup1'))


# =============================================================================
# OBJECT GRAPH SNAPSHOTS
# =============================================================================

def save_snapshot(obj: Any, filepath: Union[str, Path]) -> str:
    """Serialize an arbitrary object graph (e.g. a dict of layers) with dill."""
    filepath = Path(filepath)
    with open(filepath, 'wb') as f:
        dill.dump({
            'version': FORMAT_VERSION,
            'saved_at': datetime.now().isoformat(),
            'payload': obj,
        }, f, protocol=dill.HIGHEST_PROTOCOL)
    logger.info("Saved snapshot to %s", filepath)
    return str(filepath)


def load_snapshot(filepath: Union[str, Path]) -> Any:
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Snapshot not found: {filepath}")
    with open(filepath, 'rb') as f:
        data = dill.load(f)
    if not isinstance(data, dict) or 'payload' not in data:
        raise StreamFormatError(f"{filepath} is not a csdr snapshot")
    logger.info("Loaded snapshot from %s", filepath)
    return data['payload']


def save_layer(layer, filepath: Union[str, Path]) -> str:
    """Write one layer without backups; see LayerPersistence for the managed form."""
    filepath = Path(filepath)
    return LayerPersistence(save_directory=filepath.parent or ".").save(layer, filepath, create_backup=False)


def load_layer(filepath: Union[str, Path], layer_class: Optional[type] = None):
    filepath = Path(filepath)
    return LayerPersistence(save_directory=filepath.parent or ".").load(filepath, layer_class)
