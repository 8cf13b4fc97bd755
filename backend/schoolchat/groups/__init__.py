"""Chat groups and their membership."""
