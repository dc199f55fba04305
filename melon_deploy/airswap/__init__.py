"""AirSwap deployment."""
