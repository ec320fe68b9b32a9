"""
Constants for the medchain client layer.

This module defines the settings used throughout the package, including the
ledger endpoint, the content store gateway and the transaction tracking
parameters. Values come from the environment (or a local .env file).
"""

import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Role definitions, as reported by the contract's user type getter
ROLES = {
    "NONE": "none",
    "PATIENT": "patient",
    "DOCTOR": "doctor",
    "ADMIN": "admin",
}

# Ledger endpoint and contract address
RPC_URL = os.getenv("RPC_URL", "http://127.0.0.1:8545")
CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS", "0x5FbDB2315678afecb367f032d93F642f64180aa3")

# Path to the contract ABI artifact
ABI_PATH = os.getenv("ABI_PATH", os.path.join(os.path.dirname(__file__), "abi", "Healthcare.json"))

# Content store (IPFS gateway for reads, Pinata for pinning)
IPFS_GATEWAY = os.getenv("IPFS_GATEWAY", "https://gateway.pinata.cloud")
PINATA_API_URL = os.getenv("PINATA_API_URL", "https://api.pinata.cloud")
PINATA_JWT = os.getenv("PINATA_JWT", "")

# Seconds before a metadata fetch is treated as failed
METADATA_TIMEOUT = float(os.getenv("METADATA_TIMEOUT", "10"))

# Transaction tracking
CONFIRMATIONS = int(os.getenv("CONFIRMATIONS", "1"))
RECEIPT_POLL_INTERVAL = float(os.getenv("RECEIPT_POLL_INTERVAL", "2"))
GAS_PRICE_PREMIUM = float(os.getenv("GAS_PRICE_PREMIUM", "1.1"))

# Optional local signing key (development only)
PRIVATE_KEY = os.getenv("PRIVATE_KEY", "")

# Monetary precision of the ledger's smallest unit (wei)
DECIMALS = 18
DISPLAY_DECIMALS = int(os.getenv("DISPLAY_DECIMALS", "4"))
