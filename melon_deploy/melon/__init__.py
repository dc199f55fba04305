"""Melon protocol core deployment."""
