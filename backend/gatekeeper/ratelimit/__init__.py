# Rate limiting package init
"""
Fixed-window rate limiting: counter stores, named policies and the engine.
"""
