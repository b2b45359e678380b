# ============================================================================
# memserve/server/__init__.py
# Server Package - FastAPI file server
# ============================================================================
#
# PURPOSE:
# HTTP front of the cache. Every GET/HEAD path is looked up in the in-memory
# cache and answered from there; nothing touches the disk per request.
#
# KEY MODULES:
# - api.py:        FastAPI app, request logging, error handlers, uvicorn runner
# - state.py:      ServerState, owner of the cache, reconciler and refresher
# - content.py:    conditional GET / Range handling for cached bytes
# - rate_limit.py: per-caller minimum interval between requests
# - tls.py:        certificate provider for the HTTPS listener
#
# ============================================================================
