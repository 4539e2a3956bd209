"""Voice memo pipeline - Canonical path utilities.

Returns canonical names and Paths. Does NOT create directories.
"""

from pathlib import Path

from voicememo.config import AUDIO_FILE_EXTENSION, LEOPARD_MODELS_DIR, UPLOADS_DIR


def audio_blob_name(audio_id: int) -> str:
    """Get the object name for an audio blob.

    Returns:
        "{audio_id}.webm"
    """
    return f"{audio_id}{AUDIO_FILE_EXTENSION}"


def audio_upload_path(audio_id: int, root: Path | None = None) -> Path:
    """Get canonical path for a locally stored audio blob.

    Args:
        audio_id: Audio identifier.
        root: Optional uploads root override. Defaults to config.UPLOADS_DIR.

    Returns:
        Path: {root}/{audio_id}.webm
    """
    return (root if root is not None else UPLOADS_DIR) / audio_blob_name(audio_id)


def leopard_model_path(language: str, root: Path | None = None) -> Path:
    """Get canonical path for a cached Leopard acoustic model.

    English ships without a language suffix.

    Args:
        language: Two-letter language code.
        root: Optional model cache override. Defaults to config.LEOPARD_MODELS_DIR.

    Returns:
        Path: {root}/leopard_params.pv or {root}/leopard_params_{language}.pv
    """
    return (root if root is not None else LEOPARD_MODELS_DIR) / leopard_model_filename(language)


def leopard_model_filename(language: str) -> str:
    """Get the published file name of a Leopard model."""
    language = language.lower()
    if language == "en":
        return "leopard_params.pv"
    return f"leopard_params_{language}.pv"
