"""
macro_api - resilient invocation core for third-party REST API wrappers.
"""

__version__ = "3.0.1"
