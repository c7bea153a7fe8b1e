"""Adapters layer for Family-Chart.

This module contains the storage adapters that interface with DuckDB and
PostgreSQL. Adapters implement the Port interfaces defined in the domain
layer (entity storage with conditional updates, audit storage and family
access control).
"""
