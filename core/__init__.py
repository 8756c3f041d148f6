"""Core module - provider-neutral plumbing.

Configuration, error taxonomy, retry/backoff, observability and audit.
Provider-specific API code belongs in /connectors/.
"""

__version__ = "1.0.0"
