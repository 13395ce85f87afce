# shieldscan/keygen.py
# -*- coding: utf-8 -*-
"""
Dev key material for a local scan server.

  python -m shieldscan.keygen scan_key.pem            # RSA key the server opens envelopes with
  python -m shieldscan.keygen scan_key.pem --uvk      # also print a throwaway unified viewing key

The viewing key printed here is derived from a random seed and is for local
testing only. It is not a wallet key.
"""
import argparse
import os
import secrets

from .scan_core.crypto import generate_rsa_keypair
from .scan_core.keys import generate_unified_key


def write_private_key(path: str, bits: int = 2048) -> str:
    if os.path.exists(path):
        raise FileExistsError(f"{path} already exists, refusing to overwrite")
    private_pem, public_pem = generate_rsa_keypair(bits)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(private_pem)
    return public_pem


def main(argv=None):
    p = argparse.ArgumentParser(description="generate dev keys for the scan server")
    p.add_argument("path", help="where to write the RSA private key (PEM)")
    p.add_argument("--bits", type=int, default=2048)
    p.add_argument("--uvk", action="store_true", help="also print a dev unified viewing key")
    p.add_argument("--network", default="mainnet", choices=("mainnet", "testnet", "regtest"))
    args = p.parse_args(argv)

    write_private_key(args.path, args.bits)
    print(f"SCAN_PRIVATE_KEY_PATH={os.path.abspath(args.path)}")
    if args.uvk:
        print(f"DEV_VIEWING_KEY={generate_unified_key(secrets.token_bytes(32), args.network)}")


if __name__ == "__main__":
    main()
