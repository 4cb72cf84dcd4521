"""Fleet Coordinator: worker registry, health scoring and upstream failover."""

__version__ = "1.0.0"
