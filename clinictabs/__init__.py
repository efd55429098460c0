"""Tab configuration scope-resolution service."""
