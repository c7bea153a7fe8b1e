"""HTTP API for Family-Chart.

This module provides the FastAPI application that exposes audited visit and
illness records: read, create, partial update with optimistic locking,
delete, and the per-record change history.
"""

__version__ = "1.0.0"
