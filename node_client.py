"""
Node Client
Fetches block payloads, chain status and published code checksums from the node
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)


class NodeClient:
    """
    HTTP client for the node's CometBFT RPC and REST API

    Connection errors and 5xx responses are retried by the session adapter;
    whatever still fails is raised as ``requests.RequestException``.
    """

    def __init__(
        self,
        rpc_url: str,
        api_url: str,
        timeout: int = 10,
        retry_count: int = 3,
    ):
        """
        Initialize node client

        Args:
            rpc_url: CometBFT RPC endpoint (e.g., http://localhost:26657)
            api_url: REST endpoint serving published checksums (e.g., http://localhost:1317)
            timeout: Request timeout in seconds
            retry_count: Number of retries for failed requests
        """
        self.rpc_url = rpc_url.rstrip("/")
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

        # Configure session with retry logic
        self.session = requests.Session()
        retry = Retry(
            total=retry_count, backoff_factor=0.5, status_forcelist=[500, 502, 503, 504]
        )
        adapter = HTTPAdapter(max_retries=retry)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _get(self, url: str, params: Optional[Dict] = None) -> Dict[str, Any]:
        """Make GET request with error handling"""
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            logger.error(f"Request failed: {url} - {e}")
            raise

    def _rpc_get(self, endpoint: str, params: Optional[Dict] = None) -> Dict[str, Any]:
        """Query CometBFT RPC"""
        return self._get(f"{self.rpc_url}/{endpoint}", params)

    def _api_get(self, endpoint: str, params: Optional[Dict] = None) -> Dict[str, Any]:
        """Query node REST API"""
        return self._get(f"{self.api_url}/{endpoint}", params)

    # ==================== COMETBFT RPC ====================

    def get_status(self) -> Dict[str, Any]:
        """Get node status"""
        return self._rpc_get("status")

    def get_latest_height(self) -> int:
        """Height of the chain tip"""
        status = self.get_status()
        return int(status["result"]["sync_info"]["latest_block_height"])

    def get_block(self, height: int) -> Dict[str, Any]:
        """Get block at height"""
        return self._rpc_get("block", {"height": str(height)})

    def get_block_results(self, height: int) -> Dict[str, Any]:
        """Get block results (tx results and end block events)"""
        return self._rpc_get("block_results", {"height": str(height)})

    # ==================== CHECKSUMS ====================

    def get_checksums(self) -> Dict[str, str]:
        """Published code checksums, ``{"tx_transfer.wasm": "<hash>", ...}``"""
        data = self._api_get("checksums")
        return {str(name): str(code_hash) for name, code_hash in data.items()}
