"""
Encryption strategies for the backup pipeline.

Both strategies derive a key from a passphrase (PBKDF2-HMAC-SHA256, random
salt) and encrypt the compressed stream in independently authenticated
chunks, so memory stays bounded. Every chunk carries its index and a final
flag under authentication: reordered, duplicated or truncated streams fail
to decrypt.

Stream layout:
    header: magic(4) version(1) kdf_iterations(4) chunk_size(4) salt(16)
    frames: method specific, terminated by an authenticated final frame
"""

import os
import struct
from typing import Dict, List, Optional, Tuple, Type

from cryptography.exceptions import InvalidTag
from cryptography.fernet import InvalidToken

from securebackup.config import Config
from securebackup.errors import SecureBackupError, ErrorKind, invalid_config, missing_required
from securebackup.utils.crypto import CryptoManager, SALT_SIZE
from .conduit import iter_chunks, read_exact
from .transform import StreamTransform, start_producer


HEADER = struct.Struct('>4sBII16s')
FORMAT_VERSION = 1
FRAME_AAD = struct.Struct('>QB')
LENGTH = struct.Struct('>I')

MAX_KDF_ITERATIONS = 10_000_000
MAX_CHUNK_SIZE = 64 * 1024 * 1024


class EncryptionError(SecureBackupError):
    """Raised when encryption or decryption fails."""

    kind = ErrorKind.PIPELINE


class Encryptor(StreamTransform):
    """
    Base class for passphrase-based stream encryptors.

    Args:
        passphrase: Secret used for both encryption and decryption
        iterations: PBKDF2 iterations for new streams (decryption always
            uses the count stored in the stream header)
        chunk_size: Plaintext bytes per authenticated frame

    Raises:
        ConfigurationError: If no passphrase is given
    """

    MAGIC = b''

    def __init__(self, passphrase: str, iterations: Optional[int] = None, **kwargs):
        super().__init__(**kwargs)
        if not passphrase:
            raise missing_required(
                'passphrase',
                f"Provide a passphrase with --passphrase-file or the {Config.PASSPHRASE_ENV} environment variable"
            )
        self._passphrase = passphrase
        self.iterations = iterations or Config.KDF_ITERATIONS

    def _write_header(self, writer) -> CryptoManager:
        manager = CryptoManager(self.iterations)
        salt = manager.initialize(self._passphrase)
        writer.write(HEADER.pack(self.MAGIC, FORMAT_VERSION, self.iterations, self.chunk_size, salt))
        return manager

    def _read_header(self, reader) -> Tuple[CryptoManager, int]:
        data = read_exact(reader, HEADER.size)
        self.check_header(data)
        _, _, iterations, chunk_size, salt = HEADER.unpack(data)

        manager = CryptoManager(iterations)
        manager.initialize(self._passphrase, salt)
        return manager, chunk_size

    @classmethod
    def check_header(cls, data: bytes):
        """
        Validate a stream header without decrypting anything.

        Raises:
            EncryptionError: If the header is short, foreign or unsupported
        """
        if len(data) < HEADER.size:
            raise EncryptionError(f"File too small to be a valid {cls.method} backup")

        magic, version, iterations, chunk_size, salt = HEADER.unpack(data[:HEADER.size])
        if magic != cls.MAGIC:
            raise EncryptionError(f"Not a {cls.method} backup stream (bad header)")
        if version != FORMAT_VERSION:
            raise EncryptionError(f"Unsupported {cls.method} stream version: {version}")
        if not 1 <= iterations <= MAX_KDF_ITERATIONS:
            raise EncryptionError(f"Invalid key derivation parameters in header: {iterations}")
        if not 1 <= chunk_size <= MAX_CHUNK_SIZE or len(salt) != SALT_SIZE:
            raise EncryptionError(f"Invalid chunk size in header: {chunk_size}")

    @staticmethod
    def _ensure_drained(reader):
        if reader.read(1):
            raise EncryptionError("Unexpected data after end of encrypted stream")


class FernetEncryptor(Encryptor):
    """
    Chunked Fernet (AES-128-CBC + HMAC-SHA256) encryption.

    Frames: length(4) token, where each token encrypts index(8) final(1) data.
    """

    method = 'fernet'
    suffix = '.fernet'
    MAGIC = b'SBFN'

    def forward(self, reader, writer, cancellation=None):
        fernet = self._write_header(writer).fernet()
        index = 0

        for chunk in iter_chunks(reader, self.chunk_size, cancellation):
            self._write_frame(writer, fernet, index, False, chunk)
            index += 1

        self._write_frame(writer, fernet, index, True, b'')

    @staticmethod
    def _write_frame(writer, fernet, index, final, data):
        token = fernet.encrypt(FRAME_AAD.pack(index, 1 if final else 0) + data)
        writer.write(LENGTH.pack(len(token)) + token)

    def inverse(self, reader, writer, cancellation=None):
        manager, chunk_size = self._read_header(reader)
        fernet = manager.fernet()
        max_token = _max_fernet_token(chunk_size)
        index = 0

        while True:
            if cancellation is not None:
                cancellation.raise_if_cancelled()

            raw_length = read_exact(reader, LENGTH.size)
            if len(raw_length) < LENGTH.size:
                raise EncryptionError("Encrypted stream is truncated")

            (length,) = LENGTH.unpack(raw_length)
            if not 0 < length <= max_token:
                raise EncryptionError(f"Corrupt frame length in encrypted stream: {length}")

            token = read_exact(reader, length)
            if len(token) < length:
                raise EncryptionError("Encrypted stream is truncated")

            try:
                plaintext = fernet.decrypt(token)
            except InvalidToken:
                raise EncryptionError("Decryption failed: wrong passphrase or corrupted backup")

            frame_index, final = FRAME_AAD.unpack_from(plaintext)
            if frame_index != index:
                raise EncryptionError(f"Encrypted frames out of order (expected {index}, got {frame_index})")

            data = plaintext[FRAME_AAD.size:]
            if data:
                writer.write(data)

            if final:
                break
            index += 1

        self._ensure_drained(reader)


class AESGCMEncryptor(Encryptor):
    """
    Chunked AES-256-GCM encryption running its own producer thread.

    Frames: nonce(12) length(4) ciphertext, with index and final flag as
    associated data.
    """

    method = 'aesgcm'
    suffix = '.aes'
    MAGIC = b'SBAG'
    owns_producer = True

    NONCE_SIZE = 12
    TAG_SIZE = 16

    def forward(self, reader, writer, cancellation=None):
        return start_producer(
            'encrypt-aesgcm',
            lambda: self._encrypt(reader, writer, cancellation),
            writer
        )

    def inverse(self, reader, writer, cancellation=None):
        return start_producer(
            'decrypt-aesgcm',
            lambda: self._decrypt(reader, writer, cancellation),
            writer
        )

    def _encrypt(self, reader, writer, cancellation):
        aead = self._write_header(writer).aesgcm()
        index = 0

        def emit(final, data):
            nonce = os.urandom(self.NONCE_SIZE)
            ciphertext = aead.encrypt(nonce, data, FRAME_AAD.pack(index, 1 if final else 0))
            writer.write(nonce + LENGTH.pack(len(ciphertext)) + ciphertext)

        for chunk in iter_chunks(reader, self.chunk_size, cancellation):
            emit(False, chunk)
            index += 1

        emit(True, b'')

    def _decrypt(self, reader, writer, cancellation):
        manager, chunk_size = self._read_header(reader)
        aead = manager.aesgcm()
        max_length = chunk_size + self.TAG_SIZE
        index = 0

        while True:
            if cancellation is not None:
                cancellation.raise_if_cancelled()

            prefix = read_exact(reader, self.NONCE_SIZE + LENGTH.size)
            if len(prefix) < self.NONCE_SIZE + LENGTH.size:
                raise EncryptionError("Encrypted stream is truncated")

            nonce = prefix[:self.NONCE_SIZE]
            (length,) = LENGTH.unpack(prefix[self.NONCE_SIZE:])
            if not self.TAG_SIZE <= length <= max_length:
                raise EncryptionError(f"Corrupt frame length in encrypted stream: {length}")

            ciphertext = read_exact(reader, length)
            if len(ciphertext) < length:
                raise EncryptionError("Encrypted stream is truncated")

            # A frame is authenticated against its position and finality
            final = length == self.TAG_SIZE
            try:
                data = aead.decrypt(nonce, ciphertext, FRAME_AAD.pack(index, 1 if final else 0))
            except InvalidTag:
                raise EncryptionError("Decryption failed: wrong passphrase or corrupted backup")

            if data:
                writer.write(data)

            if final:
                break
            index += 1

        self._ensure_drained(reader)


def _max_fernet_token(chunk_size: int) -> int:
    # version + timestamp + iv + padded ciphertext + hmac, then base64
    raw = 1 + 8 + 16 + ((chunk_size + FRAME_AAD.size) // 16 + 1) * 16 + 32
    return 4 * ((raw + 2) // 3)


# Map method identifier to implementation
ENCRYPTORS: Dict[str, Type[Encryptor]] = {
    'fernet': FernetEncryptor,
    'aesgcm': AESGCMEncryptor,
}


def valid_methods() -> List[str]:
    """Return all supported encryption method identifiers."""
    return list(ENCRYPTORS.keys())


def create_encryptor(method: str, passphrase: str, iterations: Optional[int] = None, **kwargs) -> Encryptor:
    """
    Create an encryptor for the given method.

    Raises:
        ConfigurationError: If method is unknown or passphrase is missing
    """
    key = (method or '').lower()
    if key not in ENCRYPTORS:
        raise invalid_config(
            'encryption',
            f"unknown method: {method}",
            f"Valid options: {', '.join(valid_methods())}"
        )

    return ENCRYPTORS[key](passphrase, iterations=iterations, **kwargs)
