"""Allow running the worker with ``python -m jobhost.worker``."""

from jobhost.worker.main import run

run()
