"""Raspberry Pi Image Generator - orchestration around pi-gen.

This package drives the upstream pi-gen tool to build a Raspberry Pi OS image
with the ofxPiMapper projection-mapping application pre-installed: it prepares
the pi-gen checkout, synthesizes the custom stages, runs the build and
records the resulting image.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
