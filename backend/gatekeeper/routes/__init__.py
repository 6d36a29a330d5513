# Routes package init
"""
Gatekeeper — API Routes Package
=================================

Route Inventory:
    - health.py:   GET /health                          (store probes)
    - session.py:  GET /api/csrf-token                  (issue CSRF token)
                   GET /api/auth/me                     (current principal)
                   GET /api/auth/rate-limit-status      (window usage)
                   GET /api/admin/rate-limit-policies   (catalog listing)
                   DELETE /api/admin/rate-limits/{name} (clear a counter)

Product routes protect themselves with the composer dependencies
(gatekeeper.composer.protect / require_*).
"""
