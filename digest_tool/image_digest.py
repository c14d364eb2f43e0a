#!/usr/bin/env python3
import sys
import os
import re
import time
import shutil
import binascii
import argparse
import tempfile
import subprocess
from dataclasses import dataclass
from textwrap import dedent
from typing import Mapping, Optional, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa, utils


ALGORITHM = "rsa2048-sha256"
TS_FIELD = "ts"
SIG_FIELD = "rsa2048"
RSA_KEY_BITS = 2048
CHUNK_SIZE = 64 * 1024

OPENSSL_ENV = "OPENSSL"
EPOCH_ENV = "SOURCE_DATE_EPOCH"

PKCS11_URI_RE = re.compile(r"^pkcs11:\S+$")
HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")


class DigestError(Exception):
    """Fatal error, reported on stderr by main()."""


@dataclass(frozen=True)
class SignatureRecord:
    digest: str
    timestamp: Optional[str] = None
    signature: Optional[str] = None


@dataclass(frozen=True)
class GenerateRequest:
    image: str
    output: str
    timestamp: int
    key: Optional[str] = None
    key_is_uri: bool = False
    hsm_wrapper: Optional[str] = None
    openssl: str = "openssl"
    verbose: bool = False


@dataclass(frozen=True)
class VerifyRequest:
    image: str
    signature_file: str
    key: str
    verbose: bool = False


Request = Union[GenerateRequest, VerifyRequest]


def info(request: Request, message: str):
    if request.verbose:
        sys.stderr.write(message + "\n")


# ------------------------------------------------------------
# Signature record format
# ------------------------------------------------------------
def format_record(record: SignatureRecord) -> str:
    lines = [record.digest, f"{TS_FIELD}: {record.timestamp}"]
    if record.signature is not None:
        lines.append(f"{SIG_FIELD}: {record.signature}")
    return "\n".join(lines) + "\n"


def parse_record(text: str) -> SignatureRecord:
    """Parse the text of a signature file.

    The first line is the bare digest. The ``ts:`` and ``rsa2048:`` lines
    are matched by prefix, anything else is ignored. The timestamp is kept
    as the raw text; it is informational and never checked.
    """
    lines = text.splitlines()
    if not lines or not DIGEST_RE.match(lines[0].strip()):
        raise DigestError("malformed signature file: first line is not a SHA-256 digest")

    timestamp = None
    signature = None
    for line in lines[1:]:
        name, sep, value = line.partition(":")
        if not sep:
            continue
        name = name.strip()
        value = value.strip()
        if name == TS_FIELD:
            timestamp = value
        elif name == SIG_FIELD:
            signature = value

    return SignatureRecord(lines[0].strip(), timestamp, signature)


# ------------------------------------------------------------
# Crypto primitives
# ------------------------------------------------------------
def load_file(fname: str) -> bytes:
    try:
        with open(fname, "rb") as f:
            return f.read()
    except OSError as e:
        raise DigestError(f"cannot read '{fname}': {e.strerror}")


def sha256_file(path: str) -> bytes:
    """SHA-256 of the exact file content, read in chunks."""
    digest = hashes.Hash(hashes.SHA256())
    try:
        with open(path, "rb") as f:
            while True:
                data = f.read(CHUNK_SIZE)
                if not data:
                    break
                digest.update(data)
    except OSError as e:
        raise DigestError(f"cannot read image '{path}': {e.strerror}")
    return digest.finalize()


def load_private_key(key_path: str) -> rsa.RSAPrivateKey:
    try:
        private_key = serialization.load_pem_private_key(load_file(key_path), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise DigestError(f"cannot load PEM private key '{key_path}': {e}")

    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise DigestError(f"'{key_path}' is not an RSA private key")
    if private_key.key_size != RSA_KEY_BITS:
        raise DigestError(f"'{key_path}' is a {private_key.key_size}-bit key, expected {RSA_KEY_BITS}")
    return private_key


def load_public_key(key_path: str) -> rsa.RSAPublicKey:
    try:
        public_key = serialization.load_pem_public_key(load_file(key_path))
    except (ValueError, UnsupportedAlgorithm) as e:
        raise DigestError(f"cannot load PEM public key '{key_path}': {e}")

    if not isinstance(public_key, rsa.RSAPublicKey):
        raise DigestError(f"'{key_path}' is not an RSA public key")
    return public_key


def sign_with_key(digest: bytes, key_path: str) -> str:
    """Signs the image with RSA PKCS#1 v1.5 / SHA-256, given its SHA-256 digest.

    The signature is the same as signing the raw image bytes.
    """
    private_key = load_private_key(key_path)
    signature = private_key.sign(digest, padding.PKCS1v15(), utils.Prehashed(hashes.SHA256()))
    return binascii.hexlify(signature).decode()


def sign_with_pkcs11(image: str, uri: str, openssl: str) -> str:
    """Signs through the openssl pkcs11 engine, staging the result in a scratch dir."""
    with tempfile.TemporaryDirectory(prefix="image-digest-") as scratch:
        sig_path = os.path.join(scratch, "image.sig")
        cmd = [
            openssl, "dgst", "-sha256",
            "-engine", "pkcs11", "-keyform", "engine",
            "-sign", uri,
            "-out", sig_path,
            image,
        ]
        try:
            proc = subprocess.run(cmd, capture_output=True, check=False)
        except OSError as e:
            raise DigestError(f"cannot run '{openssl}': {e.strerror}")

        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", errors="replace").strip()
            raise DigestError(f"'{openssl}' failed to sign with {uri} (exit {proc.returncode}): {stderr}")

        try:
            with open(sig_path, "rb") as f:
                signature = f.read()
        except FileNotFoundError:
            raise DigestError(f"'{openssl}' did not produce a signature")

    if not signature:
        raise DigestError(f"'{openssl}' produced an empty signature")
    return binascii.hexlify(signature).decode()


def sign_with_hsm(image: str, wrapper: str) -> str:
    """Runs the HSM wrapper and returns the hex signature it prints."""
    # The wrapper's stderr is passed through untouched.
    try:
        proc = subprocess.run([wrapper, "-a", ALGORITHM, image], stdout=subprocess.PIPE, check=False)
    except OSError as e:
        raise DigestError(f"cannot run HSM wrapper '{wrapper}': {e.strerror}")

    if proc.returncode != 0:
        raise DigestError(f"HSM wrapper '{wrapper}' failed with exit status {proc.returncode}")

    sig_hex = proc.stdout.decode("ascii", errors="replace").strip()
    if not sig_hex:
        raise DigestError(f"HSM wrapper '{wrapper}' returned an empty signature")
    if not HEX_RE.match(sig_hex):
        raise DigestError(f"HSM wrapper '{wrapper}' returned a malformed signature")
    return sig_hex


def save_file(fname: str, contents: str):
    """Replace fname with contents, or leave it untouched on failure."""
    out_dir = os.path.dirname(os.path.abspath(fname))
    try:
        f = tempfile.NamedTemporaryFile("w", encoding="utf-8", newline="\n", dir=out_dir,
                                        prefix=".image-digest-", delete=False)
    except OSError as e:
        raise DigestError(f"cannot write '{fname}': {e.strerror}")

    try:
        with f:
            f.write(contents)
        os.chmod(f.name, 0o644)
        os.replace(f.name, fname)
    except OSError as e:
        os.remove(f.name)
        raise DigestError(f"cannot write '{fname}': {e.strerror}")
    except BaseException:
        os.remove(f.name)
        raise


# ------------------------------------------------------------
# Operations
# ------------------------------------------------------------
def generate(request: GenerateRequest) -> SignatureRecord:
    digest = sha256_file(request.image)
    digest_hex = binascii.hexlify(digest).decode()
    info(request, f"sha256: {digest_hex}")

    signature = None
    if request.hsm_wrapper:
        info(request, f"Signing {request.image} with HSM wrapper {request.hsm_wrapper}")
        signature = sign_with_hsm(request.image, request.hsm_wrapper)
    elif request.key_is_uri:
        info(request, f"Signing {request.image} with PKCS#11 key {request.key}")
        signature = sign_with_pkcs11(request.image, request.key, request.openssl)
    elif request.key:
        info(request, f"Signing {request.image} with {request.key}")
        signature = sign_with_key(digest, request.key)

    record = SignatureRecord(digest_hex, str(request.timestamp), signature)
    save_file(request.output, format_record(record))
    info(request, f"Signature file written to: {request.output}")
    return record


def verify(request: VerifyRequest):
    if not os.path.isfile(request.signature_file):
        raise DigestError(f"signature file '{request.signature_file}' not found")

    record = parse_record(load_file(request.signature_file).decode("utf-8", errors="replace"))
    if record.signature is None:
        raise DigestError(f"'{SIG_FIELD}' field not found in '{request.signature_file}'")

    try:
        signature = binascii.unhexlify(record.signature)
    except (binascii.Error, ValueError):
        raise DigestError(f"malformed '{SIG_FIELD}' field in '{request.signature_file}'")

    public_key = load_public_key(request.key)
    try:
        public_key.verify(signature, sha256_file(request.image), padding.PKCS1v15(),
                          utils.Prehashed(hashes.SHA256()))
    except InvalidSignature:
        raise DigestError(f"signature verification failed for '{request.image}' "
                          f"using '{request.signature_file}' and '{request.key}'")
    info(request, f"Signature OK: {request.image}")


# ------------------------------------------------------------
# Configuration
# ------------------------------------------------------------
def resolve_timestamp(environ: Mapping[str, str]) -> int:
    epoch = environ.get(EPOCH_ENV)
    if epoch is None or epoch == "":
        return int(time.time())
    try:
        value = int(epoch)
    except ValueError:
        raise DigestError(f"{EPOCH_ENV} is not an integer: {epoch!r}")
    if value < 0:
        raise DigestError(f"{EPOCH_ENV} must not be negative: {epoch!r}")
    return value


def is_pkcs11_uri(key: str) -> bool:
    return PKCS11_URI_RE.match(key) is not None


def build_request(args: argparse.Namespace, environ: Mapping[str, str]) -> Request:
    if not args.image:
        raise DigestError("no image specified (-i)")
    if not os.path.isfile(args.image):
        raise DigestError(f"image file '{args.image}' not found")
    if not os.access(args.image, os.R_OK):
        raise DigestError(f"image file '{args.image}' is not readable")

    key_is_uri = False
    if args.key:
        key_is_uri = is_pkcs11_uri(args.key)
        if not key_is_uri and not os.path.isfile(args.key):
            raise DigestError(f"key '{args.key}' is neither a file nor a PKCS#11 URI")

    if args.verify:
        if not args.key:
            raise DigestError("verify (-v) requires a public key (-k)")
        if key_is_uri or args.hsm_wrapper:
            raise DigestError("verify (-v) only supports a PEM public key file")
        return VerifyRequest(args.image, args.verify, args.key, args.verbose)

    if not args.output:
        raise DigestError("no output file specified (-o)")

    if args.hsm_wrapper and not os.path.isfile(args.hsm_wrapper):
        raise DigestError(f"HSM wrapper '{args.hsm_wrapper}' not found")

    return GenerateRequest(
        image=args.image,
        output=args.output,
        timestamp=resolve_timestamp(environ),
        key=args.key,
        key_is_uri=key_is_uri,
        hsm_wrapper=args.hsm_wrapper,
        openssl=environ.get(OPENSSL_ENV) or "openssl",
        verbose=args.verbose,
    )


def check_dependencies(request: Request):
    if not isinstance(request, GenerateRequest):
        return
    if request.hsm_wrapper:
        if not os.access(request.hsm_wrapper, os.X_OK):
            raise DigestError(f"HSM wrapper '{request.hsm_wrapper}' is not executable")
    elif request.key_is_uri and shutil.which(request.openssl) is None:
        raise DigestError(f"'{request.openssl}' not found, it is required for PKCS#11 keys")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="image-digest",
        description=dedent("""
            Creates a signature file for a firmware image: the SHA-256 digest,
            a timestamp and optionally an RSA-2048 signature of the image.
            With -v an existing signature file is verified instead.
        """),
        epilog=dedent(f"""
            environment:
              {OPENSSL_ENV}              openssl executable used for PKCS#11 keys
              {EPOCH_ENV}    timestamp to record instead of the current time
        """),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-i", "--image", help="Image to hash, sign or verify")
    parser.add_argument("-o", "--output", help="Signature file to write")
    parser.add_argument("-k", "--key", help="PEM private key or PKCS#11 URI to sign with, "
                                            "or PEM public key to verify with")
    parser.add_argument("-H", "--hsm-wrapper", help="Sign with this HSM wrapper instead of -k")
    parser.add_argument("-v", "--verify", metavar="SIGFILE", help="Verify the image against SIGFILE")
    parser.add_argument("-V", "--verbose", action="store_true", help="Print progress to stderr")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    if argv is None:
        argv = sys.argv[1:]
    if not argv:
        parser.print_usage(sys.stderr)
        return 1

    args = parser.parse_args(argv)
    try:
        request = build_request(args, os.environ)
        check_dependencies(request)
        if isinstance(request, VerifyRequest):
            verify(request)
        else:
            generate(request)
    except DigestError as e:
        sys.stderr.write(f"Error: {e}\n")
        return 1
    except KeyboardInterrupt:
        sys.stderr.write("Interrupted\n")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
