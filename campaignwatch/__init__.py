"""Campaign monitoring job pipeline: durable job queue, worker orchestrator and alerting."""

__version__ = "0.1.0"
