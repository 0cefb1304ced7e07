from __future__ import annotations

import base64
import json
from pathlib import Path

import pytest
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from httpfm_backend.uploads import (
    EncryptedEnvelope,
    UploadError,
    UploadPayload,
    clean_filename,
    decode_payload,
    decrypt_envelope,
    encrypt_payload,
    save_encrypted_upload,
)

from .conftest import KEY, KEY_B64

IV = bytes(range(100, 116))


def _envelope(plaintext: bytes, key: bytes = KEY, iv: bytes = IV) -> dict:
    padder = padding.PKCS7(128).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return {"iv": base64.b64encode(iv).decode(), "data": base64.b64encode(ciphertext).decode()}


def _payload(filename: str, directory: str, content: bytes) -> bytes:
    return json.dumps(
        {"filename": filename, "directory": directory, "data": base64.b64encode(content).decode()}
    ).encode("utf-8")


def test_decrypt_reconstructs_payload():
    original = {"filename": "report.pdf", "directory": "docs/new", "data": base64.b64encode(b"%PDF-1.7").decode()}
    envelope = EncryptedEnvelope(**_envelope(json.dumps(original).encode()))
    payload = decode_payload(decrypt_envelope(envelope, KEY))
    assert payload.model_dump() == original


def test_encrypt_payload_matches_manual_envelope():
    payload = UploadPayload(filename="a.txt", directory="", data="aGk=")
    envelope = encrypt_payload(payload, KEY, IV)
    assert decode_payload(decrypt_envelope(envelope, KEY)) == payload


def test_save_encrypted_upload_creates_directory(root: Path):
    content = bytes(range(256)) * 4
    body = json.dumps(_envelope(_payload("blob.bin", "incoming/today", content))).encode()
    dest = save_encrypted_upload(root, body, KEY)
    assert dest == (root / "incoming" / "today" / "blob.bin").resolve()
    assert dest.read_bytes() == content


def test_save_encrypted_upload_overwrites(root: Path):
    body = json.dumps(_envelope(_payload("readme.txt", "", b"replaced"))).encode()
    save_encrypted_upload(root, body, KEY)
    assert (root / "readme.txt").read_bytes() == b"replaced"


@pytest.mark.parametrize(
    "body",
    [
        b"not json",
        b"[]",
        json.dumps({"iv": "!!!", "data": "AAAA"}).encode(),
        json.dumps({"iv": base64.b64encode(b"short").decode(), "data": base64.b64encode(b"0" * 16).decode()}).encode(),
        json.dumps(_envelope(b"not a json payload")).encode(),
        json.dumps(_envelope(json.dumps({"filename": "x"}).encode())).encode(),
        json.dumps(_envelope(_payload("..", "", b"x"))).encode(),
        json.dumps(_envelope(_payload("evil.txt", "../..", b"x"))).encode(),
        json.dumps(_envelope(json.dumps({"filename": "x", "data": "@@@"}).encode())).encode(),
    ],
)
def test_bad_envelopes_raise_upload_error(root: Path, body: bytes):
    with pytest.raises(UploadError):
        save_encrypted_upload(root, body, KEY)
    assert not (root.parent / "evil.txt").exists()


def test_wrong_key_fails(root: Path):
    body = json.dumps(_envelope(_payload("a.txt", "", b"x"), key=bytes(32))).encode()
    with pytest.raises(UploadError):
        save_encrypted_upload(root, body, KEY)


def test_clean_filename():
    assert clean_filename("my%20file.txt") == "my%20file.txt"
    assert clean_filename("a%2Fb.txt") == "a%2Fb.txt"
    assert clean_filename("C:\\Users\\me\\photo.jpg") == "photo.jpg"
    with pytest.raises(UploadError):
        clean_filename("")
    with pytest.raises(UploadError):
        clean_filename("..")


def test_encrypted_upload_route(make_client, root: Path):
    client = make_client(encrypted_uploads=True, encryption_key=KEY)
    listing = client.get("/browse/docs").text
    assert KEY_B64 in listing

    resp = client.post("/upload", json=_envelope(_payload("new.txt", "docs", b"secret stuff")))
    assert resp.status_code == 200
    assert resp.text == "File uploaded: new.txt"
    assert (root / "docs" / "new.txt").read_bytes() == b"secret stuff"


def test_encrypted_upload_route_errors(make_client, lines: list[str]):
    client = make_client(encrypted_uploads=True, encryption_key=KEY)
    assert client.post("/upload", content=b"").status_code == 400

    resp = client.post("/upload", content=b"garbage")
    assert resp.status_code == 500
    assert resp.text.startswith("Upload failed: Invalid upload envelope")
    assert any("ERROR: Upload failed" in line for line in lines)

    # Plain multipart is not accepted while encryption is required.
    resp = client.post("/upload", data={"path": ""}, files={"file": ("a.txt", b"x")})
    assert resp.status_code == 500


def test_plain_multipart_upload(client, root: Path):
    resp = client.post(
        "/upload",
        data={"path": "docs/new folder"},
        files=[("file", ("one.txt", b"1")), ("file2", ("two + more.txt", b"2")), ("other", ("skip.txt", b"3"))],
        follow_redirects=False,
    )
    assert resp.status_code == 303
    assert resp.headers["location"] == "/browse/docs%2Fnew%20folder"
    assert (root / "docs" / "new folder" / "one.txt").read_bytes() == b"1"
    assert (root / "docs" / "new folder" / "two + more.txt").read_bytes() == b"2"
    assert not (root / "docs" / "new folder" / "skip.txt").exists()


def test_plain_upload_overwrites_and_redirects_to_listing(client, root: Path):
    resp = client.post("/upload", data={"path": ""}, files={"file": ("readme.txt", b"new")})
    assert resp.status_code == 200
    assert "readme.txt" in resp.text
    assert (root / "readme.txt").read_bytes() == b"new"


def test_plain_upload_requires_files(client):
    assert client.post("/upload", data={"path": "docs"}).status_code == 400
    assert client.post("/upload", data={"path": "docs"}, files={"file": ("", b"")}).status_code == 400


def test_plain_upload_bad_target(client, root: Path):
    resp = client.post("/upload", data={"path": "../outside"}, files={"file": ("a.txt", b"x")})
    assert resp.status_code == 500
    assert not (root.parent / "outside").exists()

    resp = client.post("/upload", data={"path": "readme.txt"}, files={"file": ("a.txt", b"x")})
    assert resp.status_code == 500


def test_plain_upload_skips_invalid_parts(client, root: Path):
    resp = client.post(
        "/upload",
        data={"path": ""},
        files=[("file", ("..", b"bad")), ("file", ("good.txt", b"ok"))],
        follow_redirects=False,
    )
    assert resp.status_code == 303
    assert (root / "good.txt").read_bytes() == b"ok"


def test_encrypted_upload_keeps_percent_sequences_in_filename(root: Path):
    body = json.dumps(_envelope(_payload("50%25 off.txt", "", b"deal"))).encode()
    dest = save_encrypted_upload(root, body, KEY)
    assert dest.name == "50%25 off.txt"
    assert (root / "50%25 off.txt").read_bytes() == b"deal"
    assert not (root / "50% off.txt").exists()


def test_plain_upload_keeps_percent_sequences_in_filename(client, root: Path):
    (root / "b.txt").write_bytes(b"untouched")
    resp = client.post(
        "/upload",
        data={"path": ""},
        files=[("file", ("a%2Fb.txt", b"new")), ("file2", ("50%25 off.txt", b"deal"))],
        follow_redirects=False,
    )
    assert resp.status_code == 303
    assert (root / "a%2Fb.txt").read_bytes() == b"new"
    assert (root / "50%25 off.txt").read_bytes() == b"deal"
    assert (root / "b.txt").read_bytes() == b"untouched"
