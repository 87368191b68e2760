"""keygate: shared-key reverse proxy gateway with per-client quotas."""

__version__ = "1.0.0"
