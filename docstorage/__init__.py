"""
Docstorage - object storage access for a collaborative document app.

This package contains the complete service:
- core: Framework-agnostic document helpers
- infrastructure: Object storage and outbound HTTP
- api: FastAPI routes and dependencies
- config: Application configuration
"""

__version__ = "0.1.0"
