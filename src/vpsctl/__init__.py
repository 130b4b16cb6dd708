"""vpsctl: provision VPS hosts and roll out containers onto them."""
from __future__ import annotations

__all__ = ["__version__"]

# NOTE: The version is duplicated in ``pyproject.toml``.
__version__ = "0.3.0"
