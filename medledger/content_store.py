"""
Content store adapters for immutable record bytes.

put() returns (content_id, content_hash) where content_hash is the SHA-256 hex
digest of the bytes; identical bytes always give the same id and hash.
Metadata passed to put() is kept in a JSON registry next to the local
storage, keyed by content id, since the store itself only holds bytes.
"""

import os
import json
import time
import hashlib
import logging
import threading
from typing import Dict, Iterable, Optional, Tuple

import ipfshttpclient

from medledger.constants import IPFS_URL, LOCAL_STORAGE_DIR
from medledger.errors import NotFound

logger = logging.getLogger(__name__)

REGISTRY_FILE = "content_registry.json"


def content_hash(data: bytes) -> str:
    """Deterministic digest used as the on-chain content hash."""
    return hashlib.sha256(data).hexdigest()


class ContentRegistry:
    """JSON registry of content ids and the metadata they were stored with."""

    def __init__(self, storage_dir: str = LOCAL_STORAGE_DIR):
        os.makedirs(storage_dir, exist_ok=True)
        self.path = os.path.join(storage_dir, REGISTRY_FILE)
        self._lock = threading.Lock()

    def load(self) -> Dict:
        if not os.path.exists(self.path):
            return {"cids": {}, "metadata": {"last_updated": time.time()}}
        with open(self.path, "r") as f:
            return json.load(f)

    def save(self, registry: Dict) -> None:
        registry["metadata"]["last_updated"] = time.time()
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(registry, f, indent=2)
        os.replace(tmp_path, self.path)

    def register(self, cid: str, digest: str, metadata: Optional[Dict] = None) -> None:
        """Register a content id; the first registration of a cid wins."""
        with self._lock:
            registry = self.load()
            if cid in registry["cids"]:
                return
            registry["cids"][cid] = {
                "timestamp": time.time(),
                "content_hash": digest,
                "metadata": metadata or {},
            }
            self.save(registry)

    def get(self, cid: str) -> Optional[Dict]:
        with self._lock:
            return self.load()["cids"].get(cid)


class ContentStore:
    """Append-only blob store interface."""

    def __init__(self, registry: ContentRegistry):
        self.registry = registry

    def put(self, data: bytes, metadata: Optional[Dict] = None) -> Tuple[str, str]:
        digest = content_hash(data)
        cid = self._store(data, digest)
        self.registry.register(cid, digest, metadata)
        logger.info(f"Stored {len(data)} bytes as {cid} (sha256 {digest[:12]}...)")
        return cid, digest

    def get(self, content_id: str) -> bytes:
        raise NotImplementedError

    def metadata(self, content_id: str) -> Dict:
        entry = self.registry.get(content_id)
        if entry is None:
            raise NotFound(f"Content {content_id} is not registered", target_id=content_id)
        return entry["metadata"]

    def _store(self, data: bytes, digest: str) -> str:
        raise NotImplementedError


class LocalContentStore(ContentStore):
    """Content addressed files under <storage_dir>/content, named by digest."""

    def __init__(self, storage_dir: str = LOCAL_STORAGE_DIR):
        super().__init__(ContentRegistry(storage_dir))
        self.content_dir = os.path.join(storage_dir, "content")
        os.makedirs(self.content_dir, exist_ok=True)

    def _store(self, data: bytes, digest: str) -> str:
        cid = f"sha256-{digest}"
        path = os.path.join(self.content_dir, cid)
        if not os.path.exists(path):
            tmp_path = f"{path}.tmp"
            with open(tmp_path, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)
        return cid

    def get(self, content_id: str) -> bytes:
        path = os.path.join(self.content_dir, os.path.basename(content_id))
        if not os.path.isfile(path):
            raise NotFound(f"Content {content_id} not found in local storage", target_id=content_id)
        with open(path, "rb") as f:
            return f.read()


def connect_ipfs(urls: Iterable[str]):
    """Connect to the first reachable IPFS API among the given addresses."""
    last_error = None
    for url in urls:
        # Accept http://host:port as well as multiaddrs
        if url.startswith("http://"):
            host, _, port = url[len("http://"):].rstrip("/").partition(":")
            url = f"/dns4/{host}/tcp/{port or 5001}/http"
        try:
            client = ipfshttpclient.connect(url)
            logger.info(f"Connected to IPFS at {url}")
            return client
        except Exception as e:
            logger.warning(f"Could not connect to IPFS at {url}: {e}")
            last_error = e
    raise ConnectionError(f"No reachable IPFS node: {last_error}")


class IPFSContentStore(ContentStore):
    """Content store backed by an IPFS node through ipfshttpclient."""

    def __init__(self, client=None, urls: Optional[Iterable[str]] = None,
                 storage_dir: str = LOCAL_STORAGE_DIR):
        super().__init__(ContentRegistry(storage_dir))
        self.client = client if client is not None else connect_ipfs(urls or [IPFS_URL, "http://127.0.0.1:5001"])

    def _store(self, data: bytes, digest: str) -> str:
        result = self.client.add_bytes(data)
        # Older clients return the add response instead of the bare hash
        return result["Hash"] if isinstance(result, dict) else result

    def get(self, content_id: str) -> bytes:
        try:
            return self.client.cat(content_id)
        except ipfshttpclient.exceptions.ErrorResponse as e:
            raise NotFound(f"Content {content_id} not found on IPFS: {e}", target_id=content_id)
