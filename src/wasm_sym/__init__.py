"""Dual-mode (concrete and symbolic) verification harness for WebAssembly contracts."""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
