"""
Compression strategies for the backup pipeline.

Supports multiple methods:
- gzip: zlib deflate with a gzip container (.gz)
- bzip2: Burrows-Wheeler block compression (.bz2)
- xz: LZMA compression (.xz)
- none: No compression (passthrough)

All compressors are streaming: memory use is bounded by the chunk size
regardless of archive size.
"""

import bz2
import lzma
import zlib
from typing import Dict, List, Optional, Type

from securebackup.errors import SecureBackupError, ErrorKind, invalid_config
from .conduit import copy_stream, iter_chunks
from .transform import StreamTransform


class CompressionError(SecureBackupError):
    """Raised when compression or decompression fails."""

    kind = ErrorKind.PIPELINE


class Compressor(StreamTransform):
    """
    Base class for incremental compressors.

    Subclasses provide _compressor() and _decompressor() factories returning
    objects with the zlib/bz2/lzma incremental API.
    """

    def __init__(self, level: Optional[int] = None, **kwargs):
        super().__init__(**kwargs)
        self.level = level

    def _compressor(self):
        raise NotImplementedError

    def _decompressor(self):
        raise NotImplementedError

    def forward(self, reader, writer, cancellation=None):
        """Compress reader into writer."""
        compressor = self._compressor()

        for chunk in iter_chunks(reader, self.chunk_size, cancellation):
            output = compressor.compress(chunk)
            if output:
                writer.write(output)

        tail = compressor.flush()
        if tail:
            writer.write(tail)

    def inverse(self, reader, writer, cancellation=None):
        """
        Decompress reader into writer.

        Output is produced in pieces of at most chunk_size bytes, so a highly
        compressible chunk never expands into one large write.

        Raises:
            CompressionError: If the stream is corrupt, truncated or followed
                by unexpected data
        """
        decompressor = self._decompressor()

        for chunk in iter_chunks(reader, self.chunk_size, cancellation):
            if decompressor.eof:
                raise CompressionError(f"Unexpected data after end of {self.method} stream")
            self._decompress_chunk(decompressor, chunk, writer)

        if not decompressor.eof:
            raise CompressionError(f"Truncated {self.method} stream")

        if decompressor.unused_data:
            raise CompressionError(f"Unexpected data after end of {self.method} stream")

    def _decompress_chunk(self, decompressor, data: bytes, writer):
        while data is not None:
            try:
                output = decompressor.decompress(data, self.chunk_size)
            except (OSError, EOFError, ValueError, zlib.error, lzma.LZMAError) as e:
                raise CompressionError(f"Corrupt {self.method} stream: {e}")
            if output:
                writer.write(output)
            if decompressor.eof:
                return
            data = self._pending_input(decompressor, output)

    def _pending_input(self, decompressor, output: bytes) -> Optional[bytes]:
        """
        Input for the next bounded decompress() call, or None once the
        decompressor wants a fresh chunk.

        bz2 and lzma buffer unconsumed input internally and are drained with
        b'' until needs_input is set.
        """
        return None if decompressor.needs_input else b''


class GzipCompressor(Compressor):
    """gzip container around deflate."""

    method = 'gzip'
    suffix = '.gz'

    def _compressor(self):
        level = 6 if self.level is None else self.level
        return zlib.compressobj(level, zlib.DEFLATED, 16 + zlib.MAX_WBITS)

    def _decompressor(self):
        return zlib.decompressobj(16 + zlib.MAX_WBITS)

    def _pending_input(self, decompressor, output):
        # zlib hands back unconsumed input; a full output piece may leave more pending
        if decompressor.unconsumed_tail or len(output) == self.chunk_size:
            return decompressor.unconsumed_tail
        return None


class Bzip2Compressor(Compressor):
    """bzip2 block compression."""

    method = 'bzip2'
    suffix = '.bz2'

    def _compressor(self):
        return bz2.BZ2Compressor(9 if self.level is None else self.level)

    def _decompressor(self):
        return bz2.BZ2Decompressor()


class XzCompressor(Compressor):
    """xz (LZMA2) compression."""

    method = 'xz'
    suffix = '.xz'

    def _compressor(self):
        preset = 6 if self.level is None else self.level
        return lzma.LZMACompressor(format=lzma.FORMAT_XZ, preset=preset)

    def _decompressor(self):
        return lzma.LZMADecompressor(format=lzma.FORMAT_XZ)


class NoneCompressor(Compressor):
    """Passthrough: the tar stream is written as-is."""

    method = 'none'
    suffix = ''

    def forward(self, reader, writer, cancellation=None):
        copy_stream(reader, writer, self.chunk_size, cancellation)

    def inverse(self, reader, writer, cancellation=None):
        copy_stream(reader, writer, self.chunk_size, cancellation)


# Map method identifier to implementation
COMPRESSORS: Dict[str, Type[Compressor]] = {
    'gzip': GzipCompressor,
    'bzip2': Bzip2Compressor,
    'xz': XzCompressor,
    'none': NoneCompressor,
}

_LEVEL_RANGES = {
    'gzip': (-1, 9),
    'bzip2': (1, 9),
    'xz': (0, 9),
}


def valid_methods() -> List[str]:
    """Return all supported compression method identifiers."""
    return list(COMPRESSORS.keys())


def create_compressor(method: str, level: Optional[int] = None, **kwargs) -> Compressor:
    """
    Create a compressor for the given method.

    Args:
        method: Compression method ('gzip', 'bzip2', 'xz', 'none')
        level: Optional method-specific compression level
        **kwargs: Passed to the compressor (e.g. chunk_size)

    Returns:
        Compressor instance

    Raises:
        ConfigurationError: If method or level is invalid
    """
    key = (method or '').lower()
    if key not in COMPRESSORS:
        raise invalid_config(
            'compression',
            f"unknown method: {method}",
            f"Valid options: {', '.join(valid_methods())}"
        )

    if level is not None and key in _LEVEL_RANGES:
        low, high = _LEVEL_RANGES[key]
        if not low <= level <= high:
            raise invalid_config(
                'compression level',
                f"{level} is out of range for {key}",
                f"Use a level between {low} and {high}"
            )

    return COMPRESSORS[key](level=level, **kwargs)
