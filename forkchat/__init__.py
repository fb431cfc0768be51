"""forkchat - client-side agent runtime with branching conversations."""

__version__ = "0.1.0"

from forkchat.config import Config
from forkchat.main import main

__all__ = ["Config", "main", "__version__"]
