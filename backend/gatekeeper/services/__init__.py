# Services package init
"""
Gatekeeper — Services Layer

Service Inventory:
    - UserStore (abstract): id → user lookup for the identity resolver
    - SqlUserStore: async SQLAlchemy implementation over the `users` table
    - InMemoryUserStore: dict-backed implementation for tests and local use
"""
