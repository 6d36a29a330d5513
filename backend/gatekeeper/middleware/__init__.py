# Middleware package init
"""
Gatekeeper — Middleware Package
=================================

Middleware Chain (order matters!):
    Request → [Request ID] → [Logging] → [Session] → [CSRF cookie] → [CORS] → Route

    1. Request ID first: every log line and error body carries it
    2. Logging: one access line per request, including the resolved principal
    3. Session / CSRF cookie / CORS: Starlette and gatekeeper middleware

Rate limiting is NOT middleware: it needs the matched route template and the
resolved principal, so it runs as a route dependency (gatekeeper.composer).
"""
