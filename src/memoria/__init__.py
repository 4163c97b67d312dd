"""memoria: memory retrieval and ranking engine for conversational agents."""

__version__ = "0.1.0"
