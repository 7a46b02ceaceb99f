"""Gzip encoding of archive files (``.csv.gz``)."""

import gzip
import shutil
from io import BytesIO
from pathlib import Path
from typing import Optional

import structlog

from archive_purge.exceptions import SerializationError
from utils.logging import get_logger


class Compressor:
    """Gzip with a fixed level and a zero mtime, so equal batches give equal files."""

    def __init__(
        self,
        compression_level: int = 6,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        if not 1 <= compression_level <= 9:
            raise ValueError(f"Compression level must be between 1 and 9, got {compression_level}")

        self.compression_level = compression_level
        self.logger = logger or get_logger("compressor")

    def compress(self, data: bytes) -> tuple[bytes, int, int]:
        """Compress one encoded batch.

        Returns:
            Tuple of (compressed_data, uncompressed_size, compressed_size)

        Raises:
            SerializationError: If compression fails
        """
        buffer = BytesIO()
        try:
            with gzip.GzipFile(
                fileobj=buffer, mode="wb", compresslevel=self.compression_level, mtime=0
            ) as gz_file:
                gz_file.write(data)
        except (OSError, ValueError) as e:
            raise SerializationError(
                f"Compression failed: {e}", context={"uncompressed_size": len(data)}
            ) from e

        compressed = buffer.getvalue()
        self.logger.debug(
            "Compressed archive",
            uncompressed_size=len(data),
            compressed_size=len(compressed),
            ratio=round(len(compressed) / len(data), 3) if data else None,
            level=self.compression_level,
        )
        return compressed, len(data), len(compressed)

    def decompress(self, compressed_data: bytes) -> bytes:
        try:
            return gzip.decompress(compressed_data)
        except (OSError, EOFError, ValueError) as e:
            raise SerializationError(
                f"Decompression failed: {e}",
                context={"compressed_size": len(compressed_data)},
            ) from e

    def decompress_to_file(self, compressed_data: bytes, target: Path) -> int:
        """Stream a downloaded archive into ``target`` without holding the text in memory.

        Returns:
            Uncompressed size in bytes

        Raises:
            SerializationError: If the data is not valid gzip
        """
        try:
            with gzip.GzipFile(fileobj=BytesIO(compressed_data), mode="rb") as source:
                with open(target, "wb") as out:
                    shutil.copyfileobj(source, out)
        except (OSError, EOFError, ValueError) as e:
            raise SerializationError(
                f"Decompression failed: {e}",
                context={"compressed_size": len(compressed_data), "target": str(target)},
            ) from e
        return target.stat().st_size
