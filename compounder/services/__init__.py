"""
Chain, oracle, signing and storage services.
"""
