#!/usr/bin/env python3
"""Derive the v4r2 hot wallet address from a 24-word mnemonic.

Usage:
    python scripts/derive_wallet.py "word1 word2 ... word24"
    python scripts/derive_wallet.py            # prompts for the mnemonic
    python scripts/derive_wallet.py --testnet --subwallet 698983191
"""

import argparse
import sys
from getpass import getpass
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from tonsettle.ton.wallet import DEFAULT_SUBWALLET_ID, HotWallet, SigningError


def main():
    parser = argparse.ArgumentParser(description="Derive the hot wallet address")
    parser.add_argument("mnemonic", nargs="?", help="24 space-separated words")
    parser.add_argument("--subwallet", type=int, default=DEFAULT_SUBWALLET_ID)
    parser.add_argument("--workchain", type=int, default=0)
    parser.add_argument("--testnet", action="store_true", help="Print testnet-flagged addresses")
    args = parser.parse_args()

    mnemonic = args.mnemonic or getpass("Mnemonic (hidden): ")

    try:
        wallet = HotWallet.from_mnemonic(
            mnemonic, subwallet_id=args.subwallet, workchain=args.workchain
        )
    except SigningError as e:
        print(f"Error: {e}")
        sys.exit(1)

    address = wallet.address
    print(f"Public key:        {wallet.public_key.hex()}")
    print(f"Raw:               {address.to_raw()}")
    print(f"Bounceable:        {address.to_friendly(bounceable=True, testnet=args.testnet)}")
    print(f"Non-bounceable:    {address.to_friendly(bounceable=False, testnet=args.testnet)}")
    print()
    print("Fund the non-bounceable address to deploy the wallet before the first withdrawal.")


if __name__ == "__main__":
    main()
