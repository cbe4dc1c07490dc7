"""Order access and in-process precondition synchronization."""
