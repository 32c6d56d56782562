from .catalog import Catalog, Event, Phase, RelocInfo, Station
from .catalog_io import read_catalog, write_catalog
from .config import Config, DEFAULT_CONFIG
from .exceptions import (
    CatalogError,
    ConfigError,
    HypoDDException,
    InsufficientNeighbors,
    InsufficientObservations,
    ModelLookupError,
    NoDataError,
    SolverFailure,
)
from .relocator import HypoDDRelocator, RelocationReport
from .waveform import (
    ClientWaveformProxy,
    FileWaveformProxy,
    StreamWaveformProxy,
)
