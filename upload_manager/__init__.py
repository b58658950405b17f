"""Batch file upload engine with progress tracking, retries and conflict recovery."""
__version__ = "1.0.0"
