#!/usr/bin/env python3
"""
Generate secrets for a new deployment.

Prints a Fernet key (FERNET_KEY, encrypts widget keys at rest) and a random
master API key (MASTER_API_KEY, guards the operator API).

Usage:
    python scripts/generate_key.py
"""
import secrets

from cryptography.fernet import Fernet


def main():
    """Generate and print deployment secrets."""
    fernet_key = Fernet.generate_key().decode()
    master_api_key = secrets.token_urlsafe(32)

    print()
    print("Add these to your .env file:")
    print()
    print(f"FERNET_KEY={fernet_key}")
    print(f"MASTER_API_KEY={master_api_key}")
    print()
    print("Keep FERNET_KEY safe: stored widget keys cannot be decrypted without it.")
    print()


if __name__ == '__main__':
    main()
