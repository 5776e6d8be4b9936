"""
passthru - caching passthrough proxy.

Resolves source URLs through a remote extraction service, downloads the
resulting resource once, and serves it from local disk until it expires.
"""

__version__ = "0.1.0"
