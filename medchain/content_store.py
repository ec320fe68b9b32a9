"""
Helper functions for the off-chain content store (IPFS through an HTTP gateway).

Reads go through the public gateway; pinning goes through the Pinata HTTP API.
Both use plain HTTP requests rather than an IPFS client library.
"""

import datetime
import logging
import re
from typing import Any, Dict, Optional

import requests

from medchain.constants import IPFS_GATEWAY, METADATA_TIMEOUT, PINATA_API_URL, PINATA_JWT

logger = logging.getLogger(__name__)

_SCHEME_RE = re.compile(r"^ipfs://(?:ipfs/)?", re.IGNORECASE)


def extract_cid(ref: str) -> str:
    """
    Strip a content locator down to its bare content address.

    Accepts "Qm...", "ipfs://Qm...", "/ipfs/Qm..." and gateway URLs such as
    "https://gateway.pinata.cloud/ipfs/Qm.../file.json" (the sub-path is kept).

    Args:
        ref: The content reference as stored on-chain

    Returns:
        str: The bare CID (with any sub-path)
    """
    if ref is None:
        return ""
    cleaned = ref.strip()
    cleaned = _SCHEME_RE.sub("", cleaned)
    if "/ipfs/" in cleaned:
        cleaned = cleaned.split("/ipfs/", 1)[1]
    return cleaned.strip("/")


class ContentStore:
    """Fetch and pin JSON documents by content address."""

    def __init__(self, gateway: str = IPFS_GATEWAY, api_url: str = PINATA_API_URL,
                 jwt: str = PINATA_JWT, timeout: float = METADATA_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.gateway = gateway.rstrip("/")
        self.api_url = api_url.rstrip("/")
        self.jwt = jwt
        self.timeout = timeout
        self.http = session or requests.Session()

    def url(self, ref: str) -> str:
        return f"{self.gateway}/ipfs/{extract_cid(ref)}"

    def fetch(self, ref: str) -> Dict[str, Any]:
        """
        Fetch a JSON document from the gateway.

        Raises:
            requests.RequestException: On network errors, timeouts and non-2xx responses
            ValueError: If the body is not a JSON object
        """
        response = self.http.get(self.url(ref), timeout=self.timeout)
        response.raise_for_status()
        document = response.json()
        if not isinstance(document, dict):
            raise ValueError(f"Expected a JSON object at {ref}, got {type(document).__name__}")
        return document

    def pin_json(self, document: Dict[str, Any], name: str, kind: str = "healthcare-json") -> str:
        """
        Pin a JSON document and return its CID.

        Args:
            document: The JSON-serializable document
            name: Human-readable pin name
            kind: Value of the "type" key stored with the pin

        Returns:
            str: The CID of the pinned document
        """
        if not self.jwt:
            raise RuntimeError("PINATA_JWT is not configured; cannot pin documents")

        response = self.http.post(
            f"{self.api_url}/pinning/pinJSONToIPFS",
            json={
                "pinataContent": document,
                "pinataMetadata": {
                    "name": name,
                    "keyvalues": {
                        "type": kind,
                        "uploadedAt": datetime.datetime.now(datetime.timezone.utc).isoformat(),
                    },
                },
                "pinataOptions": {"cidVersion": 1},
            },
            headers={"Authorization": f"Bearer {self.jwt}"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        cid = response.json()["IpfsHash"]
        logger.info(f"Pinned {name} as {cid}")
        return cid
