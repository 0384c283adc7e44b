"""UploadGuard core containment components.

This package contains the quarantine state machine, path containment
primitives, the scan coordinator, the validation pipeline and the upload
orchestrator that drives an artifact from quarantine to durable storage.
"""
