"""Municipal services payment backend: payment lifecycle and QR redemption."""

__version__ = "0.1.0"
