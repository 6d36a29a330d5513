# Security package init
"""
Principal model, identity resolution and CSRF protection.
"""
