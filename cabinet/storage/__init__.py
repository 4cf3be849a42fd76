"""On-disk layout: per-user sandboxes and streamed blobs."""

from .content_store import ContentStore, ContentStream, StoredBlob, iter_binary, iter_bytes  # noqa: F401
from .sandbox import SandboxProvisioner  # noqa: F401
