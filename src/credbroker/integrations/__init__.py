"""Integration modules for OAuth, API keys and credential storage.

This package provides OAuth authentication, API-key validation and the
encrypted credential store for third-party providers.
"""
