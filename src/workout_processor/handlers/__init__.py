# Import all handlers so they register themselves.
from . import ingest  # noqa: F401
from . import republish  # noqa: F401
