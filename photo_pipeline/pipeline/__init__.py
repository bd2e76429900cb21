"""
Photo Upload Pipeline

Per-file stages:
1. Validating - intake checks, no storage side effects
2. Uploading - original written to storage with progress
3. Deriving - JPEG thumbnails per size class
4. Enriching - AI listing draft (best-effort)
5. RemovingBackground - transparent PNG variant (opt-in, best-effort)
6. Finalizing - durable job record
"""
