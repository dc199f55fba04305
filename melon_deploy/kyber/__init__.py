"""Kyber Network deployment for local and test chains."""
