"""
API package initialization.

HTTP routers and their shared FastAPI dependencies.
"""
