"""UploadGuard Celery worker package.

Modules
-------
upload_worker
    Deferred and debounced upload processing, readiness polling and the
    quarantine maintenance sweeps.
"""
