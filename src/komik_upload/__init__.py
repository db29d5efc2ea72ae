"""
Komik Upload Backend - REST API for manga catalog uploads

This package provides a FastAPI-based web service that turns operator
submissions into chapters in the manga catalog and page objects in
storage. It enables:

- Single chapter uploads from individual page files
- Bulk chapter uploads from a zip archive into an existing manga
- Metadata-driven uploads for one or many manga
- Smart imports that infer manga and chapters from an archive layout
- Dry runs, live progress, cancellation and resumable jobs

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - job_manager: Upload job lifecycle and execution coordinator
    - validator: Metadata document parsing and validation
    - archive: Zip decoding, chapter mapping and staging
    - conflicts: Conflict detection against the live catalog
    - catalog: SQLite manga / chapter / page catalog
    - database: SQLite job, unit, error and resume token store
    - storage: Local and S3 object storage behind a shared gate
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn komik_upload.main:app --reload --host 0.0.0.0 --port 8000

Architecture Principles:
    - Every check that can fail runs before the first write
    - One writer per job for state and progress
    - Chapter commits are idempotent so resumes converge
"""
