"""Allow running the worker with python -m portability.worker."""

from portability.worker.main import run

run()
