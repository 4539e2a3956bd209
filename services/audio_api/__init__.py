"""Voice memo pipeline - Audio API service.

FastAPI service for audio upload, read-back and deletion. Transcription is
handed to the Huey queue after the blob is durably stored.
"""

__all__: list[str] = []
