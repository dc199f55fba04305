"""Uniswap v1 deployment."""
