"""specforge: phased workflow orchestration with bounded retries and durable state."""

__version__ = "0.1.0"
