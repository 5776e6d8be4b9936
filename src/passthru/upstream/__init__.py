"""
Upstream collaborators of the cache engine.

- resolver.py: turns a source URL into a direct resource URL via the
  extraction service
- downloader.py: streams the resolved resource and its headers
"""

from passthru.upstream.downloader import Download, HttpDownloader
from passthru.upstream.resolver import CobaltResolver, ResolverResponse

__all__ = ["CobaltResolver", "Download", "HttpDownloader", "ResolverResponse"]
