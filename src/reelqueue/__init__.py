"""reelqueue: turn video URLs into short clips through a durable job queue."""

__version__ = "0.1.0"
