"""Live output streaming for supervised executions."""

from pmrunner.stream.broadcaster import OutputBroadcaster, Subscriber, is_stale

__all__ = ["OutputBroadcaster", "Subscriber", "is_stale"]
