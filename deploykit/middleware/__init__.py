"""
DeployKit — Middleware Package
===============================

Middleware Chain of the runtime shell (order matters):
    Request → [Request ID] → [Logging] → Route Handler

    Request ID runs first so the logging middleware can include it.
"""
