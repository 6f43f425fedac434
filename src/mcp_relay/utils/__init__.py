from .env import build_child_env, interpolate_env
from .logging_config import setup_logging

__all__ = ["build_child_env", "interpolate_env", "setup_logging"]
