"""0x protocol v2 and v3 deployment."""
