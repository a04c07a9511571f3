__all__ = [
    "SLEEP_EXPORT_HEADER",
    "__version__",
    "detect_file_type",
    "import_file",
    "ImportFile",
    "ImportResult",
]

__version__ = "0.1.0"

from .models import SLEEP_EXPORT_HEADER, ImportFile, ImportResult  # noqa: E402
from .detect import detect_file_type  # noqa: E402
from .pipeline import import_file  # noqa: E402
