"""Pinworks — FastAPI REST API layer.

This package contains the FastAPI application, Pydantic request models, and
the identity and permission dependencies.

Modules
-------
main
    FastAPI application factory with all route handlers and the ``main()``
    CLI entry point.
models
    Pydantic models for API request validation.
security
    ``X-User-Id`` resolution and ``require_permission`` dependencies.
"""
