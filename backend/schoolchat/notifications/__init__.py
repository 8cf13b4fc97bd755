"""Per-user notification delivery and preference categories."""
