"""RSA-SHA256 signing of MQTT command envelopes.

Newer firmware only accepts control commands that carry a ``header``
signed with an application certificate.  The key and certificate id are
supplied by the user through configuration; nothing is bundled here.
"""

from __future__ import annotations

import base64
import json
from typing import Any, Dict

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from bambu_lan.errors import ConfigError

SIGN_VERSION = "v1.0"
SIGN_ALGORITHM = "RSA_SHA256"


def load_private_key(pem: str) -> RSAPrivateKey:
    """Parse a PEM-encoded RSA private key.

    Accepts keys whose newlines were escaped as ``\\n`` when stored in an
    environment variable.
    """
    data = pem.replace("\\n", "\n").encode("utf-8")
    try:
        key = serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise ConfigError(f"Could not load signing key: {exc}", cause=exc) from exc
    if not isinstance(key, RSAPrivateKey):
        raise ConfigError("Signing key must be an RSA private key")
    return key


def sign_command(
    message: Dict[str, Any],
    private_key: RSAPrivateKey,
    cert_id: str,
) -> Dict[str, Any]:
    """Return a copy of *message* with a signed ``header`` block added.

    The signature covers the compact JSON serialisation of *message*
    exactly as it is published, so the caller must publish the result
    with the same separators.
    """
    payload = json.dumps(message, separators=(",", ":"))
    signature = private_key.sign(
        payload.encode("utf-8"),
        padding.PKCS1v15(),
        hashes.SHA256(),
    )
    signed = dict(message)
    signed["header"] = {
        "sign_ver": SIGN_VERSION,
        "sign_alg": SIGN_ALGORITHM,
        "sign_string": base64.b64encode(signature).decode("ascii"),
        "cert_id": cert_id,
        "payload_len": len(payload.encode("utf-8")),
    }
    return signed
