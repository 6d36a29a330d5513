"""
Gatekeeper — Request Gatekeeping Layer
========================================

What: Identity resolution, CSRF protection and fixed-window rate limiting
      for a FastAPI web API.

Architecture Note:

    ┌─────────────────────────────────────┐
    │      Routes / create_app (API)      │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │   Composer (protect, require_*)     │  ← fixed check order per route
    ├─────────────────────────────────────┤
    │  security/    │    ratelimit/       │  ← identity, CSRF │ engine, policies
    ├─────────────────────────────────────┤
    │  Stores (users: SQL, counters:      │  ← injected collaborators
    │  Redis or memory), audit sink       │
    └─────────────────────────────────────┘
"""

__version__ = "1.0.0"
