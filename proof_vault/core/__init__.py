"""
Core infrastructure modules for the local index, content stores, errors and utilities.
"""
