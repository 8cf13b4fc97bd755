"""SchoolChat: realtime group chat for the school dashboard."""
