#!/usr/bin/env python3
"""Generate a VAPID key pair for Web Push.

Prints lines ready to paste into .env:
- VAPID_PUBLIC_KEY (base64url, no padding) -> also handed to browsers
- VAPID_PRIVATE_KEY (PEM, newlines escaped as \\n) -> server only
"""

import argparse
import base64

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec


def b64url_nopad(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def generate_keys():
    private_key = ec.generate_private_key(ec.SECP256R1())

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8").strip()

    # Uncompressed point: 0x04 || X(32) || Y(32)
    public_raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )
    return b64url_nopad(public_raw), private_pem


def main():
    parser = argparse.ArgumentParser(description="Generate VAPID keys")
    parser.add_argument("--email", default="admin@example.com", help="contact for VAPID_SUBJECT")
    args = parser.parse_args()

    public_key, private_pem = generate_keys()
    print("VAPID_PUBLIC_KEY=" + public_key)
    print('VAPID_PRIVATE_KEY="' + private_pem.replace("\n", "\\n") + '"')
    print("VAPID_SUBJECT=mailto:" + args.email)


if __name__ == "__main__":
    main()
