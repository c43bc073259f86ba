"""Infant brain MRI tissue segmentation pipeline."""

__version__ = "0.1.0"
