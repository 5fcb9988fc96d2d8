"""Email campaign batching and delivery engine"""

__version__ = "1.0.0"
