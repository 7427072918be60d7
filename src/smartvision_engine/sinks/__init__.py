"""Durable event bus sinks."""

from .kafka_sink import KafkaSink, PublishError

__all__ = ["KafkaSink", "PublishError"]
