"""Archive writer: encode, compress and upload one batch."""

import tempfile
from pathlib import Path
from typing import Any, Optional

import structlog

from archive_purge.codec import RowCodec
from archive_purge.compressor import Compressor
from archive_purge.exceptions import ArchiveExistsError, SerializationError
from archive_purge.keys import ArchiveKey
from archive_purge.s3_client import S3Client
from utils.logging import get_logger


class ArchiveWriter:
    """Writes a batch of rows to object storage as a gzip CSV file."""

    def __init__(
        self,
        s3_client: S3Client,
        codec: Optional[RowCodec] = None,
        compressor: Optional[Compressor] = None,
        staging_dir: Optional[Path] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize archive writer.

        Args:
            s3_client: S3 client used for uploads
            codec: Row codec (default: new RowCodec)
            compressor: Gzip compressor (default: level 6)
            staging_dir: Directory for temporary files (default: system temp dir)
            logger: Optional logger instance
        """
        self.logger = logger or get_logger("archive_writer")
        self.s3_client = s3_client
        self.codec = codec or RowCodec(logger=self.logger)
        self.compressor = compressor or Compressor(logger=self.logger)
        self.staging_dir = staging_dir

    def write(self, rows: list[dict[str, Any]], columns: list[str], key: ArchiveKey) -> int:
        """Encode, compress and upload rows under key.

        Never overwrites: an existing object at key is an error.

        Returns:
            Compressed bytes uploaded

        Raises:
            SerializationError: If the encoded content lacks a header or data rows
            ArchiveExistsError: If the key already exists
            S3Error: If the upload fails
        """
        content = self.codec.encode_batch(rows, columns)

        # Header plus at least one data line
        if not content or content.count(b"\n") < 2:
            raise SerializationError(
                "CSV content is empty or malformed",
                context={"key": key.path, "rows": len(rows)},
            )

        if self.s3_client.object_exists(key.path):
            raise ArchiveExistsError(
                f"Archive already exists, refusing to overwrite: {key.path}",
                context={"key": key.path},
            )

        compressed, raw_size, compressed_size = self.compressor.compress(content)

        if self.staging_dir is not None:
            self.staging_dir.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(dir=self.staging_dir, prefix="archive_") as tmp_dir:
            staged = Path(tmp_dir) / key.file_name
            staged.write_bytes(compressed)
            result = self.s3_client.upload_file(staged, key.path)

        self.logger.info(
            "Uploaded archive",
            key=result["key"],
            rows=len(rows),
            uncompressed_size=raw_size,
            compressed_size=compressed_size,
        )
        return compressed_size
