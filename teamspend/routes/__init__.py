# ==== ROUTES PACKAGE ==== #

"""
Routes package for API endpoints.

This package contains the FastAPI route modules for expenses, teams and
health checks, plus the dependency providers they share.
"""
