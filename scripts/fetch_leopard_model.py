#!/usr/bin/env python3
"""Download Picovoice Leopard models into the model cache.

The transcription worker downloads a missing model on first use; this script
pre-populates the cache so the first attempt for a language does not pay for
the download (or fail on a machine without outbound network access).

Usage:
    python -m scripts.fetch_leopard_model --language en es
"""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from pathlib import Path

import httpx

from voicememo.config import LEOPARD_MODELS_DIR, MODEL_DOWNLOAD_TIMEOUT_SECONDS
from voicememo.stt import leopard_model_url
from voicememo.utils.atomic_io import atomic_write_chunks
from voicememo.utils.paths import leopard_model_path


def download(client: httpx.Client, url: str, dest: Path) -> int:
    with client.stream("GET", url) as response:
        response.raise_for_status()
        return atomic_write_chunks(response.iter_bytes(), dest)


def fetch_model(
    client: httpx.Client, language: str, output_dir: Path, force: bool = False
) -> Path | None:
    """Fetch one model. Returns the path, or None if it was already cached."""
    dest = leopard_model_path(language, output_dir)
    if dest.exists() and not force:
        return None
    download(client, leopard_model_url(language), dest)
    return dest


def main(argv: Sequence[str] | None = None, client: httpx.Client | None = None) -> int:
    parser = argparse.ArgumentParser(description="Fetch Leopard speech models")
    parser.add_argument(
        "--language",
        nargs="+",
        default=["en"],
        help="Two-letter language codes (default: en)",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=LEOPARD_MODELS_DIR,
        help=f"Model cache directory (default: {LEOPARD_MODELS_DIR})",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Download even if the model is already cached",
    )
    args = parser.parse_args(argv)

    owns_client = client is None
    if client is None:
        client = httpx.Client(timeout=MODEL_DOWNLOAD_TIMEOUT_SECONDS, follow_redirects=True)

    failures = 0
    try:
        for language in args.language:
            try:
                path = fetch_model(client, language, args.output_dir, force=args.force)
            except httpx.HTTPStatusError as exc:
                print(
                    f"Failed to download model for '{language}' "
                    f"({exc.response.status_code}): {exc.request.url}",
                    file=sys.stderr,
                )
                failures += 1
                continue
            except (httpx.HTTPError, OSError) as exc:
                print(f"Failed to download model for '{language}': {exc}", file=sys.stderr)
                failures += 1
                continue

            if path is None:
                print(f"Model for '{language}' already present in {args.output_dir}")
            else:
                print(f"Saved model for '{language}' to {path}")
    finally:
        if owns_client:
            client.close()

    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
