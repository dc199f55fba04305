"""OasisDex deployment."""
