"""GOMFLOW payment verification services."""
