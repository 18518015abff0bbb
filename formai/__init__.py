"""formai: durable AI form-processing job queue with chunked generation."""

__version__ = "1.0.0"
