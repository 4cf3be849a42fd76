"""Client helpers for scripts and load tests."""

from .http_client import StorageClient, StorageClientError  # noqa: F401
