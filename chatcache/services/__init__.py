"""
Cache, session and durable-store services used by the HTTP layer.
"""
