"""Order creation, reads, and status management."""
