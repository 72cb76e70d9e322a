"""Domain layer - certificate lifecycle rules independent of I/O."""
