"""Core pool infrastructure: the resource pool and shared constants."""
