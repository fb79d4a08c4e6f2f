"""
Services package for business logic.

Order assembly, catalog lookups and payment settlement live in the
subpackages below; routers only translate their results and errors to HTTP.
"""
