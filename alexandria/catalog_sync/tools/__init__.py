"""
Operational tools for the catalog sync service.
"""
