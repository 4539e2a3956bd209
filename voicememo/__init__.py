"""Voice memo ingestion and transcription pipeline - Core application modules.

Provides:
- Audio blob storage over local / remote-object / mock backends
- Speech-to-text backends (remote API, local native engine)
- Durable retry ledger and the transcription driver
"""

__version__ = "0.1.0"
