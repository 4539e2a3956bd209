"""Voice memo pipeline - Utility modules."""

from voicememo.utils.atomic_io import atomic_write_chunks, cleanup_orphan_temp_files
from voicememo.utils.paths import audio_blob_name, audio_upload_path, leopard_model_path

__all__ = [
    # atomic_io
    "atomic_write_chunks",
    "cleanup_orphan_temp_files",
    # paths
    "audio_blob_name",
    "audio_upload_path",
    "leopard_model_path",
]
