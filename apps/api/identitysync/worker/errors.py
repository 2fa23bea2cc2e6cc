from __future__ import annotations


class PermanentJobError(RuntimeError):
    """Raised by a job handler when retrying cannot succeed."""
