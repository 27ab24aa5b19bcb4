"""
pagecache - respond-first, process-later page cache for ASGI apps.
"""
__version__ = "0.1.0"
