"""Group message history."""
