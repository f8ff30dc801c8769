# csdr - Columnar Sparse Distributed Representations
# Local-receptive-field learning layers
#
# Every signal is a CSDR: a 2D lattice of columns, one active symbol each.
# Layers read one or more input CSDRs through local receptive fields and
# write one output CSDR. No global backprop; every update is column-local.
#
# LAYOUT:
# ├── lattice.py          - Coordinates, flat addressing, field bounds
# ├── compute_system.py   - Per-cell kernel dispatch (sequential / threads)
# ├── receptive_field.py  - Sparse local weight store, forward + reverse
# ├── sparse_coder.py     - Explaining-away sparse coder
# ├── predictor.py        - Boltzmann-sampling predictor
# ├── history.py          - Fixed-capacity history ring
# ├── actor.py            - Replay/PAL actor and TD(0) actor
# ├── config.py           - Hyperparameter dataclasses, JSON loading
# ├── persistence.py      - Binary streams, file management, dill snapshots
# └── visualization.py    - Matplotlib plots (optional dependency)

# =============================================================================
# PRIMARY EXPORTS: Layers
# =============================================================================

from .sparse_coder import SparseCoder

from .predictor import (
    Predictor,
    softmax_probabilities,
)

from .actor import (
    ActorVariant,
    ReplayActor,
    TDActor,
    create_actor,  # Primary actor factory
    discounted_return,
)

# =============================================================================
# SUPPORTING MODULES
# =============================================================================

# Geometry
from .lattice import (
    Int2,
    Int3,
    Int4,
    Float2,
    address2,
    address3,
    address4,
    project,
)

# Kernel dispatch
from .compute_system import (
    ComputeBackend,
    ComputeSystem,
)

# Weights
from .receptive_field import (
    LocalReceptiveFieldWeights,
    VisibleLayerDesc,
    WeightLayout,
)

from .history import (
    HistoryBuffer,
    HistorySample,
)

# Configuration
from .config import (
    ComputeConfig,
    SparseCoderConfig,
    PredictorConfig,
    ReplayActorConfig,
    TDActorConfig,
    LearningConfig,
    load_config,
)

from .errors import (
    CSDRError,
    ConfigurationError,
    StreamFormatError,
)

# Persistence: Save/load
from .persistence import (
    LayerPersistence,
    save_layer,
    load_layer,
    save_snapshot,
    load_snapshot,
)

# Visualization: plotting needs matplotlib (optional dependency)
from .visualization import LayerVisualizer

__version__ = "1.0.0"

__all__ = [
    # Layers
    'SparseCoder',
    'Predictor',
    'softmax_probabilities',
    'ActorVariant',
    'ReplayActor',
    'TDActor',
    'create_actor',
    'discounted_return',

    # Geometry
    'Int2',
    'Int3',
    'Int4',
    'Float2',
    'address2',
    'address3',
    'address4',
    'project',

    # Dispatch
    'ComputeBackend',
    'ComputeSystem',

    # Weights and history
    'LocalReceptiveFieldWeights',
    'VisibleLayerDesc',
    'WeightLayout',
    'HistoryBuffer',
    'HistorySample',

    # Configuration
    'ComputeConfig',
    'SparseCoderConfig',
    'PredictorConfig',
    'ReplayActorConfig',
    'TDActorConfig',
    'LearningConfig',
    'load_config',

    # Errors
    'CSDRError',
    'ConfigurationError',
    'StreamFormatError',

    # Persistence
    'LayerPersistence',
    'save_layer',
    'load_layer',
    'save_snapshot',
    'load_snapshot',

    # Visualization
    'LayerVisualizer',
]
