"""
Integration test modules

Tests for the backend request gateway and the signing provider webhooks.
"""
