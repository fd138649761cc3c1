"""Exception hierarchy shared by the tracker client and the ingestion server."""
from __future__ import annotations


class PixelTrackError(Exception):
    """Base class for all pixeltrack errors."""


class ValidationError(PixelTrackError):
    """Malformed or oversized batch, or an event missing required fields (HTTP 400)."""


class TransactionFailure(PixelTrackError):
    """A write failed mid-transaction; the whole batch was rolled back (HTTP 500)."""


class PersistentInitFailure(PixelTrackError):
    """Schema or connection setup failed at startup."""


class DeliveryError(PixelTrackError):
    """The tracker could not hand a batch to the ingestion endpoint."""


class TransientDeliveryError(DeliveryError):
    """Network error, timeout or 5xx. Worth retrying."""


class BatchRejected(DeliveryError):
    """The endpoint answered 4xx. Sending the same batch again will not help."""

    def __init__(self, status: int, detail: str = ""):
        super().__init__(f"HTTP {status}: {detail}" if detail else f"HTTP {status}")
        self.status = status
        self.detail = detail
