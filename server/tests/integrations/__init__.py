"""
Integration test modules

Tests for the e-signature provider adapters, response normalization
and webhook authentication.
"""
