"""
Task Backend package.

Task records with consistent completion state, a query engine (filters, search,
due-date windows, statistics) and a FastAPI app exposing them. The app lives in
``taskboard.main``.
"""

__version__ = "0.2.0"
