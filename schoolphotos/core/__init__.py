"""
Core package for shared utilities.

Configuration, structured logging, retry policies, signature and token
helpers, and rate limiting used across the service.
"""
