"""Working-directory image storage used by canvas/mask/loop instructions."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional

from PIL import Image, UnidentifiedImageError

from storyflow.constants import IMAGE_LOAD_EXTENSIONS, METADATA_SIDECAR_SUFFIX
from storyflow.errors import ImageNotFoundError, LoopIndexOutOfRangeError, StorageError


def _natural_key(name: str):
    """Sort key so that frame_2.png comes before frame_10.png."""
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", name)]


class ImageStorage:
    """Loads and saves images relative to a working directory."""

    def __init__(self, working_directory: Path | str, logger: Optional[logging.Logger] = None):
        self.working_directory = Path(working_directory)
        self.logger = logger or logging.getLogger(__name__)

    def resolve(self, relative_path: str) -> Path:
        """Resolve a workflow path against the working directory.

        Absolute paths and paths escaping the working directory are rejected.
        """
        if not relative_path or not relative_path.strip():
            raise StorageError("Empty file path")
        candidate = Path(relative_path)
        if candidate.is_absolute():
            raise StorageError(f"Path must be relative to the working directory: {relative_path}")
        root = self.working_directory.resolve()
        resolved = (root / candidate).resolve()
        if resolved != root and root not in resolved.parents:
            raise StorageError(f"Path escapes the working directory: {relative_path}")
        return resolved

    def load_image(self, relative_path: str) -> Image.Image:
        path = self.resolve(relative_path)
        if not path.is_file():
            raise ImageNotFoundError(relative_path)
        try:
            with Image.open(path) as im:
                im.load()
                return im.copy()
        except (UnidentifiedImageError, OSError) as exc:
            raise StorageError(f"Failed to load image: {relative_path} ({exc})") from exc

    def save_image(
        self,
        image: Image.Image,
        relative_path: str,
        metadata: Optional[Dict] = None,
    ) -> Path:
        """Save `image` as PNG, with an optional JSON sidecar next to it."""
        path = self.resolve(relative_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            image.save(path, format="PNG")
        except OSError as exc:
            raise StorageError(f"Failed to save: {relative_path} ({exc})") from exc
        self.logger.info(f"Saved image: {path}")

        if metadata is not None:
            sidecar = path.with_suffix(METADATA_SIDECAR_SUFFIX)
            try:
                with open(sidecar, "w", encoding="utf-8") as fh:
                    json.dump(metadata, fh, indent=2, sort_keys=True)
            except (OSError, TypeError) as exc:
                # The image itself is saved; a missing sidecar is not fatal.
                self.logger.warning(f"Failed to write metadata file {sidecar}: {exc}")
        return path

    def list_images(self, relative_folder: str) -> List[Path]:
        folder = self.resolve(relative_folder)
        if not folder.is_dir():
            raise ImageNotFoundError(relative_folder)
        files = [
            p for p in folder.iterdir()
            if p.is_file() and p.suffix.lower() in IMAGE_LOAD_EXTENSIONS
        ]
        return sorted(files, key=lambda p: _natural_key(p.name))

    def load_indexed(self, relative_folder: str, index: int) -> tuple[Path, Image.Image]:
        """Load the `index`-th image of a folder (natural order)."""
        files = self.list_images(relative_folder)
        if index < 0 or index >= len(files):
            raise LoopIndexOutOfRangeError(relative_folder, index, len(files))
        path = files[index]
        relative = path.relative_to(self.working_directory.resolve()).as_posix()
        return path, self.load_image(relative)
