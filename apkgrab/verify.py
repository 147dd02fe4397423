"""Repository index signature checks and artifact checksum checks.

Index JARs are signed the way ``jarsigner`` signs any JAR: a CMS block in
``META-INF/*.RSA`` (or ``.DSA``/``.EC``) signs ``META-INF/*.SF``, which holds
the digest of ``META-INF/MANIFEST.MF``, which in turn holds the digest of the
JSON payload. All three links are checked before any entry is trusted.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
import json
import re
import struct
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, Union

from asn1crypto import cms
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import dsa, ec, padding, rsa

from apkgrab.errors import ChecksumMismatch, FingerprintMismatch, SignatureInvalid
from apkgrab.models import RepositoryIndex
from apkgrab.repo_index import parse_index_json
from apkgrab.utils import CHUNK_SIZE, log_source, log_warn

# SHA-256 of the official F-Droid repository signing certificate.
FDROID_FINGERPRINT = bytes.fromhex(
    "43238d512c1e5eb2d6569f4a3afbf5523418b82e0a3ed1552770abb9a9c9ccab"
)

_SIGNATURE_BLOCK_RE = re.compile(r"^META-INF/[^/]+\.(DSA|EC|RSA)$")

_HASHES = {
    "sha1": hashes.SHA1,
    "sha224": hashes.SHA224,
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}

# Strongest first; the signer decides which one is present.
_JAR_DIGESTS = (("SHA-512", "sha512"), ("SHA-256", "sha256"), ("SHA1", "sha1"))

ArtifactSource = Union[bytes, Path, BinaryIO, Iterable[bytes]]


@dataclass(frozen=True)
class SignedPayload:
    name: str
    payload: bytes
    fingerprint: bytes
    trusted_on_first_use: bool = False
    verified: bool = True


def format_fingerprint(fingerprint: bytes) -> str:
    return fingerprint.hex()


def parse_fingerprint(value: str) -> bytes:
    cleaned = value.replace(":", "").replace(" ", "").strip()
    try:
        fingerprint = bytes.fromhex(cleaned)
    except ValueError:
        raise ValueError(f"Fingerprint must be valid hex: {value}") from None
    if len(fingerprint) != 32:
        raise ValueError(f"Fingerprint must be a SHA-256 digest (64 hex chars): {value}")
    return fingerprint


def warn_verification_disabled(what: str) -> None:
    log_warn("=" * 60)
    log_warn(f"SIGNATURE VERIFICATION DISABLED for {what}")
    log_warn("Its contents are NOT authenticated. Use for debugging only.")
    log_warn("=" * 60)


# ── Index JARs ──────────────────────────────────────────────────────────────

def verify_jar(
    raw: bytes,
    expected_fingerprint: bytes | None,
    payload_name: str,
    verify: bool = True,
) -> SignedPayload:
    """Check a signed index JAR and return its JSON payload.

    With *expected_fingerprint* ``None`` the signer is trusted on first use
    and reported. With *verify* ``False`` nothing is checked and a warning
    is printed.
    """
    try:
        with zipfile.ZipFile(io.BytesIO(raw)) as zf:
            names = zf.namelist()
            if payload_name not in names:
                raise SignatureInvalid(f"{payload_name} missing from signed index")
            payload = zf.read(payload_name)
            if not verify:
                warn_verification_disabled(payload_name)
                return SignedPayload(payload_name, payload, b"", verified=False)

            blocks = [n for n in names if _SIGNATURE_BLOCK_RE.match(n)]
            if not blocks:
                raise SignatureInvalid("Found no certificate file in signed index")
            if len(blocks) > 1:
                raise SignatureInvalid("Found multiple certificate files in signed index")
            sf_name = blocks[0].rsplit(".", 1)[0] + ".SF"
            if sf_name not in names or "META-INF/MANIFEST.MF" not in names:
                raise SignatureInvalid("Signed index is missing its signature or manifest file")
            block = zf.read(blocks[0])
            signed_file = zf.read(sf_name)
            manifest = zf.read("META-INF/MANIFEST.MF")
    except SignatureInvalid:
        raise
    # zipfile reports corrupt headers as RuntimeError (bogus encryption flag),
    # ValueError (negative seek) or struct.error besides BadZipFile.
    except (zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, struct.error, EOFError, OSError,
            NotImplementedError, RuntimeError, ValueError, KeyError, IndexError) as e:
        raise SignatureInvalid(f"Signed index is not a readable JAR: {e}") from e

    cert_der = verify_signature_block(block, signed_file)
    fingerprint = hashlib.sha256(cert_der).digest()
    tofu = expected_fingerprint is None
    if tofu:
        log_warn(
            f"No fingerprint pinned, trusting signer on first use: "
            f"{format_fingerprint(fingerprint)}"
        )
    elif not hmac.compare_digest(fingerprint, expected_fingerprint):
        raise FingerprintMismatch(
            "Fingerprint of the repository signing key "
            f"({format_fingerprint(fingerprint)}) does not match the expected "
            f"fingerprint ({format_fingerprint(expected_fingerprint)})",
            expected=expected_fingerprint,
            actual=fingerprint,
        )

    _check_jar_digests(signed_file, manifest, payload_name, payload)
    return SignedPayload(payload_name, payload, fingerprint, trusted_on_first_use=tofu)


def verify_signature_block(block: bytes, signed_content: bytes) -> bytes:
    """Verify a CMS SignedData block over *signed_content*.

    Returns the DER encoding of the (single) signing certificate.
    """
    try:
        info = cms.ContentInfo.load(block)
        if info["content_type"].native != "signed_data":
            raise SignatureInvalid("Signature block is not CMS SignedData")
        signed_data = info["content"]
        certificates = signed_data["certificates"]
        certs = [c.chosen for c in certificates if c.name == "certificate"] if certificates.native else []
        signers = list(signed_data["signer_infos"])
        if len(certs) != 1:
            raise SignatureInvalid(f"Expected one certificate in signature block, found {len(certs)}")
        if len(signers) != 1:
            raise SignatureInvalid(f"Expected one signer in signature block, found {len(signers)}")
        cert = certs[0]
        signer = signers[0]
        cert_der = cert.dump()
        spki = cert["tbs_certificate"]["subject_public_key_info"].dump()
        digest_name = signer["digest_algorithm"]["algorithm"].native
        signature = signer["signature"].native
        signed_attrs = signer["signed_attrs"]
        attrs = signed_attrs.native
    except (ValueError, TypeError, KeyError, IndexError) as e:
        raise SignatureInvalid(f"Could not parse signature block: {e}") from e

    hash_cls = _HASHES.get(digest_name)
    if hash_cls is None:
        raise SignatureInvalid(f"Unsupported digest algorithm in signature block: {digest_name}")

    if attrs:
        message_digest = next(
            (a["values"][0] for a in attrs if a["type"] == "message_digest"), None
        )
        if message_digest is None:
            raise SignatureInvalid("Signed attributes carry no message digest")
        actual = hashlib.new(digest_name, signed_content).digest()
        if not hmac.compare_digest(actual, message_digest):
            raise SignatureInvalid("Message digest in signed attributes does not match signed file")
        # Signed attributes are signed as a DER SET, not with their [0] tag.
        data = b"\x31" + signed_attrs.dump()[1:]
    else:
        data = signed_content

    try:
        key = serialization.load_der_public_key(spki)
        if isinstance(key, rsa.RSAPublicKey):
            key.verify(signature, data, padding.PKCS1v15(), hash_cls())
        elif isinstance(key, ec.EllipticCurvePublicKey):
            key.verify(signature, data, ec.ECDSA(hash_cls()))
        elif isinstance(key, dsa.DSAPublicKey):
            key.verify(signature, data, hash_cls())
        else:
            raise SignatureInvalid(f"Unsupported signing key type: {type(key).__name__}")
    except InvalidSignature:
        raise SignatureInvalid("Signature of the repository index is invalid") from None
    except (ValueError, UnsupportedAlgorithm) as e:
        raise SignatureInvalid(f"Could not verify signature block: {e}") from e
    return cert_der


def _check_jar_digests(signed_file: bytes, manifest: bytes, payload_name: str, payload: bytes) -> None:
    sf_main = _parse_manifest(signed_file)[0]
    if not _digest_matches(sf_main, "-Digest-Manifest", manifest):
        raise SignatureInvalid("Manifest digest in the signed file does not match the manifest")

    sections = _parse_manifest(manifest)
    entry = next((s for s in sections[1:] if s.get("Name") == payload_name), None)
    if entry is None:
        raise SignatureInvalid(f"Manifest has no entry for {payload_name}")
    if not _digest_matches(entry, "-Digest", payload):
        raise SignatureInvalid(f"Digest of {payload_name} does not match the manifest")


def _digest_matches(section: dict[str, str], suffix: str, data: bytes) -> bool:
    for prefix, algorithm in _JAR_DIGESTS:
        value = section.get(prefix + suffix)
        if value is None:
            continue
        try:
            declared = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            return False
        return hmac.compare_digest(declared, hashlib.new(algorithm, data).digest())
    return False


def _parse_manifest(data: bytes) -> list[dict[str, str]]:
    """Split a JAR manifest into sections of unfolded ``Key: value`` pairs."""
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise SignatureInvalid(f"Manifest is not UTF-8: {e}") from e
    sections: list[dict[str, str]] = [{}]
    last_key = None
    for line in text.replace("\r\n", "\n").split("\n"):
        if not line:
            if sections[-1]:
                sections.append({})
            last_key = None
            continue
        if line.startswith(" ") and last_key:
            sections[-1][last_key] += line[1:]
            continue
        key, sep, value = line.partition(": ")
        if not sep:
            raise SignatureInvalid(f"Malformed manifest line: {line!r}")
        sections[-1][key] = value
        last_key = key
    if not sections[-1] and len(sections) > 1:
        sections.pop()
    return sections


def verify_index(
    raw: bytes,
    expected_fingerprint: bytes | None,
    repo_url: str = "",
    verify: bool = True,
    rank: int = 0,
) -> RepositoryIndex:
    """Verify an ``index-v1.jar`` and parse its entries."""
    signed = verify_jar(raw, expected_fingerprint, "index-v1.json", verify=verify)
    return _build_index(signed, signed.payload, repo_url, rank)


def verify_entry_index(
    raw_entry: bytes,
    expected_fingerprint: bytes | None,
    fetch: Callable[[str], bytes],
    repo_url: str = "",
    verify: bool = True,
    rank: int = 0,
) -> RepositoryIndex:
    """Verify an ``entry.jar``, fetch the index it names and check its digest.

    *fetch* receives the index file name (e.g. ``index-v2.json``) and
    returns its bytes.
    """
    signed = verify_jar(raw_entry, expected_fingerprint, "entry.json", verify=verify)
    try:
        entry = json.loads(signed.payload)
        index_name = entry["index"]["name"].lstrip("/")
        index_sha256 = entry["index"]["sha256"]
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise SignatureInvalid(f"entry.json does not describe an index: {e}") from e
    if not index_name or "/" in index_name or index_name.startswith("."):
        raise SignatureInvalid(f"entry.json names an unsafe index file: {index_name!r}")

    payload = fetch(index_name)
    if verify:
        try:
            expected = bytes.fromhex(index_sha256)
        except (ValueError, TypeError):
            raise SignatureInvalid("Index sha256 in entry.json is not valid hex") from None
        verify_artifact(payload, expected, label=index_name)
    else:
        warn_verification_disabled(index_name)
    return _build_index(signed, payload, repo_url, rank)


def _build_index(signed: SignedPayload, payload: bytes, repo_url: str, rank: int) -> RepositoryIndex:
    address, entries = parse_index_json(payload, repo_url, rank=rank)
    if signed.verified:
        log_source("index", f"Verified {signed.name} from {address}")
    return RepositoryIndex(
        address=address,
        entries=entries,
        signing_key_fingerprint=signed.fingerprint,
        raw_signed_payload=signed.payload,
        trusted_on_first_use=signed.trusted_on_first_use,
    )


# ── Artifacts ───────────────────────────────────────────────────────────────

def check_digest(actual: bytes, expected: bytes, label: str = "artifact") -> None:
    if not hmac.compare_digest(actual, expected):
        raise ChecksumMismatch(
            f"Checksum mismatch for {label}: expected {expected.hex()}, got {actual.hex()}"
        )


def verify_artifact(
    source: ArtifactSource,
    expected_checksum: bytes,
    algorithm: str = "sha256",
    label: str = "artifact",
) -> None:
    """Stream *source* through a digest and compare with *expected_checksum*.

    *source* may be bytes, a path, a binary file object or an iterable of
    byte chunks; nothing is buffered beyond one chunk.
    """
    h = hashlib.new(algorithm)
    for chunk in _iter_chunks(source):
        h.update(chunk)
    check_digest(h.digest(), expected_checksum, label)


def _iter_chunks(source: ArtifactSource) -> Iterable[bytes]:
    if isinstance(source, (bytes, bytearray, memoryview)):
        yield bytes(source)
    elif isinstance(source, Path):
        with open(source, "rb") as f:
            yield from iter(lambda: f.read(CHUNK_SIZE), b"")
    elif hasattr(source, "read"):
        yield from iter(lambda: source.read(CHUNK_SIZE), b"")
    else:
        yield from source
