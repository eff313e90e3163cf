"""
Database initialization and utilities module.

This module contains:
- System initialization and maintenance CLI (init_system.py)
- Database schema setup (create_table.sql)
"""

__version__ = "1.0.0"
