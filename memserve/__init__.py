# ============================================================================
# memserve/__init__.py
# Package Marker for the In-Memory File Server
# ============================================================================
#
# PURPOSE:
# Serves a directory tree over HTTP straight from memory. The tree is loaded
# once at startup and rescanned on a fixed interval so the in-memory copy
# follows what is on disk.
#
# LAYOUT:
# - memserve.cache:  the file cache, its lock, the scanner and refresh loop
# - memserve.server: FastAPI app, rate limiter, content serving, TLS
# - memserve.config / memserve.errors: configuration and error taxonomy
#
# ============================================================================

__version__ = "1.0.0"
