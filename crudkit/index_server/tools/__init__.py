"""
Operational tools for the crudkit index server.
"""
