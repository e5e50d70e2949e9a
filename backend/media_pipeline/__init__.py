"""Media derivative pipeline and storage-lifecycle gateway."""
