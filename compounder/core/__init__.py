"""
Core configuration, logging, database and exceptions.
"""
