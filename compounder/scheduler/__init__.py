"""
Compounding scheduler service.
"""
