"""jobhost - persisted background job scheduling and execution.

Producers enqueue named jobs with JSON payloads; workers claim them from a
shared store (in-memory or PostgreSQL), run the registered handler and
retry failures with exponential backoff until they complete or go dead.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
