"""
Core modules for Quota Gate.

This package contains policy resolution, premium entitlements,
admission analytics and the admission engine.
"""
