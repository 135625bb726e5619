"""Background workers."""
from .expiration_worker import run_expiration_sweep, start_expiration_worker

__all__ = ["run_expiration_sweep", "start_expiration_worker"]
