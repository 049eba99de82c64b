"""Browser-automation task orchestration: scheduling, provider failover and compliance audit."""

__version__ = "0.1.0"
