# Import all handlers so they register themselves.
from . import day_recompute  # noqa: F401
