"""
Infrastructure Layer
=====================

Low-level technical concerns shared by bounded contexts:
- Database connection management
"""
