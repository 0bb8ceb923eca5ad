"""Chapter vocabulary extraction engine.

This package turns a raw chapter page image into study material:
- upscale + tile the image to respect the recognition service limits
- recognize text per tile (concurrently) and reconcile tile seams
- extract vocabulary (term, translation, importance score) with a language model

Spaced-repetition scheduling and persistence are out of scope.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
