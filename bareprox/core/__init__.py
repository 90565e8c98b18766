"""
Core configuration, logging, encryption and error types.
"""
