"""
Core modules for Variation Guard.

This package contains pricing, admission control, generation dispatch,
settlement and materialization of variation requests.
"""
