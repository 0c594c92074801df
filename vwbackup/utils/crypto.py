"""
Authenticated encryption for backup archives.

Archives are encrypted with AES-256-GCM using a key derived from the backup
passphrase with Scrypt (memory/CPU-hard). Every file gets a fresh salt and
nonce prefix. Data is processed in fixed-size chunks so large archives never
need to fit in memory.

Container layout:

    header  = magic "VWBK" | version | log2(n) | r | p | salt[16] | nonce_prefix[8] | chunk_size
    chunk_i = AES-GCM(key, nonce_prefix || i, plaintext_i, aad = header || i || final_flag)

Binding the header, the chunk index and a final-chunk flag into the
associated data makes header tampering, chunk reordering and truncation all
fail authentication.
"""

import os
import struct
import logging

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from vwbackup.backup.errors import EncryptionFailed, WeakPassphrase

logger = logging.getLogger(__name__)

MAGIC = b'VWBK'
VERSION = 1
HEADER_FORMAT = '>4sBBBB16s8sI'
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
SALT_SIZE = 16
NONCE_PREFIX_SIZE = 8
TAG_SIZE = 16
KEY_SIZE = 32

DEFAULT_CHUNK_SIZE = 1024 * 1024
DEFAULT_MIN_PASSPHRASE_LENGTH = 32
DEFAULT_SCRYPT_N = 2 ** 15
DEFAULT_SCRYPT_R = 8
DEFAULT_SCRYPT_P = 1

# Accepted KDF parameters when reading a header
_MIN_LOG2_N, _MAX_LOG2_N = 10, 22
_MAX_R, _MAX_P = 32, 16
_MAX_CHUNK_SIZE = 64 * 1024 * 1024


class ArchiveCipher:
    """
    Encrypts and decrypts backup archives with a passphrase.

    The passphrase strength check happens in the constructor, so building the
    cipher is the fail-fast precondition for a backup run: a weak passphrase
    is rejected before any snapshot, disk or network work starts.
    """

    def __init__(
        self,
        passphrase: str,
        min_passphrase_length: int = DEFAULT_MIN_PASSPHRASE_LENGTH,
        scrypt_n: int = DEFAULT_SCRYPT_N,
        scrypt_r: int = DEFAULT_SCRYPT_R,
        scrypt_p: int = DEFAULT_SCRYPT_P,
        chunk_size: int = DEFAULT_CHUNK_SIZE
    ):
        """
        Args:
            passphrase: Backup passphrase (from the secret store)
            min_passphrase_length: Minimum accepted passphrase length
            scrypt_n: Scrypt CPU/memory cost, a power of two
            scrypt_r: Scrypt block size
            scrypt_p: Scrypt parallelization
            chunk_size: Plaintext bytes per encrypted chunk

        Raises:
            WeakPassphrase: If the passphrase is shorter than the minimum
            EncryptionFailed: If the KDF parameters are invalid
        """
        if not passphrase or len(passphrase) < min_passphrase_length:
            raise WeakPassphrase(
                f"Backup passphrase must be at least {min_passphrase_length} characters"
            )
        if scrypt_n < 2 or scrypt_n & (scrypt_n - 1):
            raise EncryptionFailed(f"Scrypt n must be a power of two, got {scrypt_n}")
        log2_n = scrypt_n.bit_length() - 1
        if not _MIN_LOG2_N <= log2_n <= _MAX_LOG2_N:
            raise EncryptionFailed(f"Scrypt n out of range: 2**{log2_n}")
        if not 1 <= scrypt_r <= _MAX_R or not 1 <= scrypt_p <= _MAX_P:
            raise EncryptionFailed("Scrypt r/p out of range")
        if not 1024 <= chunk_size <= _MAX_CHUNK_SIZE:
            raise EncryptionFailed(f"Chunk size out of range: {chunk_size}")

        self._passphrase = passphrase.encode('utf-8')
        self.log2_n = log2_n
        self.scrypt_r = scrypt_r
        self.scrypt_p = scrypt_p
        self.chunk_size = chunk_size

    def __repr__(self):
        return f'<ArchiveCipher scrypt_n=2**{self.log2_n} r={self.scrypt_r} p={self.scrypt_p}>'

    def _derive_key(self, salt: bytes, log2_n: int, r: int, p: int) -> bytes:
        try:
            kdf = Scrypt(salt=salt, length=KEY_SIZE, n=2 ** log2_n, r=r, p=p)
            return kdf.derive(self._passphrase)
        except Exception as e:
            raise EncryptionFailed(f"Key derivation failed: {e}")

    @staticmethod
    def _nonce(prefix: bytes, index: int) -> bytes:
        if index >= 2 ** 32:
            raise EncryptionFailed("Archive too large: chunk counter exhausted")
        return prefix + struct.pack('>I', index)

    @staticmethod
    def _aad(header: bytes, index: int, final: bool) -> bytes:
        return header + struct.pack('>IB', index, 1 if final else 0)

    def encrypt_file(self, source_path: str, output_path: str) -> str:
        """
        Encrypt source_path into output_path.

        Returns:
            output_path

        Raises:
            EncryptionFailed: On any KDF, cipher or I/O error
        """
        salt = os.urandom(SALT_SIZE)
        nonce_prefix = os.urandom(NONCE_PREFIX_SIZE)
        header = struct.pack(
            HEADER_FORMAT, MAGIC, VERSION, self.log2_n, self.scrypt_r, self.scrypt_p,
            salt, nonce_prefix, self.chunk_size
        )
        aead = AESGCM(self._derive_key(salt, self.log2_n, self.scrypt_r, self.scrypt_p))

        partial_path = f"{output_path}.partial"
        try:
            with open(source_path, 'rb') as fin, open(partial_path, 'wb') as fout:
                fout.write(header)
                index = 0
                chunk = fin.read(self.chunk_size)
                while True:
                    next_chunk = fin.read(self.chunk_size) if len(chunk) == self.chunk_size else b''
                    final = not next_chunk
                    fout.write(aead.encrypt(
                        self._nonce(nonce_prefix, index), chunk, self._aad(header, index, final)
                    ))
                    if final:
                        break
                    chunk = next_chunk
                    index += 1
            os.replace(partial_path, output_path)
        except EncryptionFailed:
            _discard(partial_path)
            raise
        except Exception as e:
            _discard(partial_path)
            raise EncryptionFailed(f"Encryption failed: {e}")

        return output_path

    def decrypt_file(self, source_path: str, output_path: str) -> str:
        """
        Decrypt an encrypted container into output_path.

        Nothing is left at output_path unless every chunk authenticated.

        Returns:
            output_path

        Raises:
            EncryptionFailed: With message "decryption error" when authentication
                fails (wrong passphrase or tampered data), or a format/I/O message
        """
        partial_path = f"{output_path}.partial"
        try:
            with open(source_path, 'rb') as fin:
                header = fin.read(HEADER_SIZE)
                log2_n, r, p, salt, nonce_prefix, chunk_size = _parse_header(header)
                aead = AESGCM(self._derive_key(salt, log2_n, r, p))
                block_size = chunk_size + TAG_SIZE

                with open(partial_path, 'wb') as fout:
                    index = 0
                    block = fin.read(block_size)
                    while True:
                        if len(block) < TAG_SIZE:
                            raise EncryptionFailed("decryption error", detail="truncated container")
                        next_block = fin.read(block_size) if len(block) == block_size else b''
                        final = not next_block
                        try:
                            plaintext = aead.decrypt(
                                self._nonce(nonce_prefix, index), block, self._aad(header, index, final)
                            )
                        except InvalidTag:
                            raise EncryptionFailed("decryption error", detail=f"authentication failed at chunk {index}")
                        fout.write(plaintext)
                        if final:
                            break
                        block = next_block
                        index += 1
            os.replace(partial_path, output_path)
        except EncryptionFailed:
            _discard(partial_path)
            raise
        except Exception as e:
            _discard(partial_path)
            raise EncryptionFailed(f"Decryption failed: {e}")

        return output_path


def _parse_header(header: bytes):
    if len(header) != HEADER_SIZE:
        raise EncryptionFailed("Not an encrypted backup: header truncated")
    magic, version, log2_n, r, p, salt, nonce_prefix, chunk_size = struct.unpack(HEADER_FORMAT, header)
    if magic != MAGIC:
        raise EncryptionFailed("Not an encrypted backup: bad magic")
    if version != VERSION:
        raise EncryptionFailed(f"Unsupported container version: {version}")
    if not _MIN_LOG2_N <= log2_n <= _MAX_LOG2_N or not 1 <= r <= _MAX_R or not 1 <= p <= _MAX_P:
        raise EncryptionFailed("Invalid key derivation parameters in header")
    if not 1024 <= chunk_size <= _MAX_CHUNK_SIZE:
        raise EncryptionFailed(f"Invalid chunk size in header: {chunk_size}")
    return log2_n, r, p, salt, nonce_prefix, chunk_size


def _discard(path: str):
    if os.path.exists(path):
        try:
            os.remove(path)
        except OSError:
            logger.error(f"Failed to remove partial file {path}")


def is_encrypted_container(path: str) -> bool:
    """Check whether a file starts with the container magic."""
    try:
        with open(path, 'rb') as f:
            return f.read(len(MAGIC)) == MAGIC
    except OSError:
        return False
