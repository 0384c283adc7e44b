"""UploadGuard: containment pipeline for untrusted uploads.

Uploaded bytes are placed in a quarantine store, scanned, validated and
normalized before they are promoted into durable storage.
"""

__version__ = "0.1.0"
