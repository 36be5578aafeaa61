"""Text extraction from raw file bytes."""

import json
from typing import Optional, Iterable

from loguru import logger

from .scanner import TEXT_FILE_EXTENSIONS


class ContentExtractor:
    """
    Converts file bytes into text for supported types.

    Unsupported types yield ``None``. Undecodable content yields an empty
    string and a warning, so the item is still indexed with metadata only.
    """

    def __init__(self, text_extensions: Optional[Iterable[str]] = None):
        self.text_extensions = frozenset(
            e.lower().lstrip(".") for e in (text_extensions if text_extensions is not None else TEXT_FILE_EXTENSIONS)
        )

    def supports(self, extension: str) -> bool:
        return extension.lower().lstrip(".") in self.text_extensions

    def extract_text(self, data: bytes, extension: str) -> Optional[str]:
        extension = extension.lower().lstrip(".")
        if not self.supports(extension):
            return None

        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            logger.warning(f"Cannot decode .{extension} content as UTF-8: {e}")
            return ""

        if "\x00" in text:
            logger.warning(f"Binary content in .{extension} file, keeping metadata only")
            return ""

        if extension == "json":
            try:
                return json.dumps(json.loads(text), indent=2, ensure_ascii=False)
            except ValueError:
                return text

        return text


_default_extractor = ContentExtractor()


def extract_text(data: bytes, extension: str) -> Optional[str]:
    """Module-level shortcut using the default text extensions."""
    return _default_extractor.extract_text(data, extension)
