"""
PDF Conversion Service package.

This module provides a FastAPI application that converts office documents to
PDF through a single supervised LibreOffice engine, one job at a time.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
