"""Running agents: resolution, process supervision and the IPC channel."""
