# Import all handlers so they register themselves.
from . import pipeline  # noqa: F401
from . import backfill  # noqa: F401
