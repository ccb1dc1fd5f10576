__version__ = "0.1.0"

from .errors import DElegateError, ConfigurationError, DataError, EngineError  # noqa: E402
from .markers_and_de import find_de, find_all_markers  # noqa: E402

__all__ = [
    "find_de",
    "find_all_markers",
    "DElegateError",
    "ConfigurationError",
    "DataError",
    "EngineError",
    "__version__",
]
