"""HTTP application for the proxy."""

from passthru.api.server import artifact_response, create_app

__all__ = ["artifact_response", "create_app"]
