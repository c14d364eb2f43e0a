import os
from textwrap import dedent

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa


def write_keypair(directory, name, key_size=2048):
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    priv_path = directory / f"{name}-prvk.pem"
    pub_path = directory / f"{name}-pubk.pem"
    priv_path.write_bytes(private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ))
    pub_path.write_bytes(private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ))
    return str(priv_path), str(pub_path)


@pytest.fixture(scope="session")
def keys(tmp_path_factory):
    d = tmp_path_factory.mktemp("keys")
    return write_keypair(d, "fw")


@pytest.fixture(scope="session")
def other_keys(tmp_path_factory):
    d = tmp_path_factory.mktemp("other-keys")
    return write_keypair(d, "other")


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "pieeprom.bin"
    path.write_bytes(bytes(range(256)) * 64 + b"\xff" * 100)
    return path


@pytest.fixture(autouse=True)
def fixed_epoch(monkeypatch):
    monkeypatch.setenv("SOURCE_DATE_EPOCH", "1700000000")
    monkeypatch.delenv("OPENSSL", raising=False)


@pytest.fixture
def make_script(tmp_path):
    def _make(name, body):
        path = tmp_path / name
        path.write_text("#!/bin/sh\n" + dedent(body))
        os.chmod(path, 0o755)
        return str(path)
    return _make


@pytest.fixture(scope="session")
def short_keys(tmp_path_factory):
    d = tmp_path_factory.mktemp("short-keys")
    return write_keypair(d, "short", key_size=1024)
