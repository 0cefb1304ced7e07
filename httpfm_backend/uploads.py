from __future__ import annotations

import base64
import binascii
import json
import logging
import shutil
from pathlib import Path
from typing import BinaryIO, Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from pydantic import BaseModel, ValidationError

from .security import is_safe_basename, resolve_path


logger = logging.getLogger(__name__)


class UploadError(Exception):
    """A decode, decrypt, parse or write step of an upload failed."""


class EncryptedEnvelope(BaseModel):
    iv: str
    data: str


class UploadPayload(BaseModel):
    filename: str
    directory: str = ""
    data: str


def clean_filename(raw: Optional[str]) -> str:
    """Reduce a client filename to a bare basename.

    The name is taken verbatim: multipart names arrive decoded by the form
    parser and envelope names are plain JSON strings.
    """
    name = (raw or "").replace("\\", "/").rsplit("/", 1)[-1].strip()
    if not is_safe_basename(name):
        raise UploadError(f"Invalid filename: {raw!r}")
    return name


def target_directory(root: Path, relative: str) -> Path:
    """Resolve (and create) the upload directory under root."""
    try:
        directory = resolve_path(root, relative, must_exist=False)
    except FileNotFoundError:
        raise UploadError(f"Invalid target directory: {relative!r}")
    if directory.exists() and not directory.is_dir():
        raise UploadError(f"Target is not a directory: {relative!r}")
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def save_stream(directory: Path, filename: str, source: BinaryIO, chunk_size: int) -> Path:
    """Copy a file-like object into directory, replacing any existing file."""
    dest = directory / clean_filename(filename)
    with dest.open("wb") as out:
        shutil.copyfileobj(source, out, chunk_size)
    return dest


def _b64decode(value: str, what: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise UploadError(f"Invalid Base64 in {what}: {e}")


def decrypt_envelope(envelope: EncryptedEnvelope, key: bytes) -> bytes:
    """AES-CBC decrypt an envelope and strip PKCS#7 padding."""
    iv = _b64decode(envelope.iv, "iv")
    ciphertext = _b64decode(envelope.data, "data")
    if len(iv) != 16:
        raise UploadError("IV must be 16 bytes")
    if not ciphertext or len(ciphertext) % 16:
        raise UploadError("Ciphertext length is not a multiple of the block size")
    try:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise UploadError(f"Decryption failed: {e}")


def encrypt_payload(payload: UploadPayload, key: bytes, iv: bytes) -> EncryptedEnvelope:
    """Reference client encoder: the envelope the listing page's script sends.

    Mirrors the WebCrypto code in listing.py for non-browser clients.
    """
    padder = padding.PKCS7(128).padder()
    padded = padder.update(payload.model_dump_json().encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return EncryptedEnvelope(
        iv=base64.b64encode(iv).decode("ascii"),
        data=base64.b64encode(ciphertext).decode("ascii"),
    )


def parse_envelope(body: bytes) -> EncryptedEnvelope:
    try:
        return EncryptedEnvelope.model_validate_json(body)
    except ValidationError as e:
        raise UploadError(f"Invalid upload envelope: {e.errors()[0]['msg']}")


def decode_payload(plaintext: bytes) -> UploadPayload:
    try:
        return UploadPayload.model_validate(json.loads(plaintext.decode("utf-8")))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise UploadError(f"Decrypted payload is not JSON: {e}")
    except ValidationError as e:
        raise UploadError(f"Invalid upload payload: {e.errors()[0]['msg']}")


def save_encrypted_upload(root: Path, body: bytes, key: bytes) -> Path:
    """Decrypt an {iv, data} body and write the file it carries.

    Every failure surfaces as UploadError with a message fit for the client.
    """
    payload = decode_payload(decrypt_envelope(parse_envelope(body), key))
    content = _b64decode(payload.data, "file data")
    directory = target_directory(root, payload.directory)
    dest = directory / clean_filename(payload.filename)
    try:
        dest.write_bytes(content)
    except OSError as e:
        raise UploadError(f"Could not write {dest.name}: {e}")
    logger.info("Stored encrypted upload %s (%d bytes)", dest, len(content))
    return dest
