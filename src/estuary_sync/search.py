# src/estuary_sync/search.py
"""
Client for the destination OpenSearch index.

Only the handful of REST endpoints the pipeline needs are wrapped here:
index existence and creation, `_bulk`, `_count`, `_refresh` and `_search`.
Requests can optionally be signed with AWS SigV4 for managed domains.
"""

import json
import logging
from typing import Any, Dict, Generator, List, Optional, Sequence

import botocore.session
import httpx
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials

from estuary_sync.config import OpenSearchConfig
from estuary_sync.exceptions import ConfigError, IndexRequestError
from estuary_sync.models import Record

logger: logging.Logger = logging.getLogger(__name__)

INDEX_SETTINGS: Dict[str, Any] = {
    "number_of_shards": 1,
    "number_of_replicas": 0,
    "refresh_interval": "30s",
}

INDEX_MAPPINGS: Dict[str, Any] = {
    "properties": {
        "id": {"type": "keyword"},
        "keyword": {"type": "keyword"},
        "ad_id": {"type": "keyword"},
        "ad_name": {"type": "text"},
        "ad_caption": {"type": "text"},
        "ad_risk_reason": {"type": "text"},
        "collected_at": {"type": "date"},
    }
}


def build_bulk_payload(index: str, records: Sequence[Record]) -> bytes:
    """
    Serializes records as the NDJSON body of a `_bulk` index request.

    Each record contributes an action line addressing the document by its
    identifier, followed by the document itself.

    Args:
        index (str): The destination index name.
        records (Sequence[Record]): The records of one bulk window.

    Returns:
        bytes: The UTF-8 encoded request body, newline terminated.
    """
    lines: List[str] = []
    for record in records:
        lines.append(json.dumps({"index": {"_index": index, "_id": str(record.id)}}))
        lines.append(json.dumps(record.to_document(), ensure_ascii=False))
    return ("\n".join(lines) + "\n").encode("utf-8")


class AWSSigV4Auth(httpx.Auth):
    """Signs every outgoing request with AWS Signature Version 4."""

    requires_request_body = True

    def __init__(
        self,
        region: str,
        service: str = "es",
        credentials: Optional[Credentials] = None,
    ) -> None:
        """
        Initialize the signer.

        Args:
            region (str): The AWS region of the domain.
            service (str): The signing service name.
            credentials (Credentials, optional): Explicit credentials; the
                botocore default provider chain is used when omitted.
        """
        resolved: Optional[Credentials] = (
            credentials or botocore.session.get_session().get_credentials()
        )
        if resolved is None:
            raise ConfigError("SigV4 signing is enabled but no AWS credentials found.")
        self._credentials: Credentials = resolved
        self._region: str = region
        self._service: str = service

    def auth_flow(
        self, request: httpx.Request
    ) -> Generator[httpx.Request, httpx.Response, None]:
        aws_request: AWSRequest = AWSRequest(
            method=request.method,
            url=str(request.url),
            data=request.content,
            headers={"Content-Type": request.headers.get("Content-Type", "")},
        )
        SigV4Auth(
            self._credentials.get_frozen_credentials(), self._service, self._region
        ).add_auth(aws_request)
        request.headers.update(dict(aws_request.headers.items()))
        yield request


class OpenSearchIndex:
    """
    Asynchronous access to a single OpenSearch index.

    Usage:
        async with OpenSearchIndex(config.search) as index:
            await index.ensure_index()
            count = await index.count()
    """

    def __init__(
        self,
        config: OpenSearchConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the index client without opening connections.

        Args:
            config (OpenSearchConfig): Connection details of the cluster.
            transport (httpx.AsyncBaseTransport, optional): Custom transport,
                used by tests to stub the cluster.
        """
        self._config: OpenSearchConfig = config
        self._transport: Optional[httpx.AsyncBaseTransport] = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def name(self) -> str:
        return self._config.index

    async def __aenter__(self) -> "OpenSearchIndex":
        auth: Optional[httpx.Auth] = (
            AWSSigV4Auth(self._config.region) if self._config.sigv4 else None
        )
        self._client = httpx.AsyncClient(
            base_url=self._config.node,
            timeout=self._config.timeout_s,
            verify=self._config.verify_ssl,
            auth=auth,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        content: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Sends a request and maps transport failures to `IndexRequestError`.

        Args:
            method (str): The HTTP method.
            path (str): Path relative to the cluster base URL.
            json_body (Dict[str, Any], optional): A JSON request body.
            content (bytes, optional): A raw request body.
            headers (Dict[str, str], optional): Extra request headers.

        Returns:
            httpx.Response: The response, whatever its status code.
        """
        if self._client is None:
            raise IndexRequestError("OpenSearch client is not open.")
        try:
            return await self._client.request(
                method, path, json=json_body, content=content, headers=headers
            )
        except httpx.HTTPError as e:
            raise IndexRequestError(f"{method} {path} failed: {e}") from e

    @staticmethod
    def _decode(response: httpx.Response, what: str) -> Dict[str, Any]:
        """
        Parses a successful response body as JSON.

        Args:
            response (httpx.Response): A 2xx response.
            what (str): Request description used in the error message.

        Returns:
            Dict[str, Any]: The parsed body.

        Raises:
            IndexRequestError: If the body is not JSON, e.g. a proxy error page.
        """
        try:
            return response.json()
        except ValueError as e:
            raise IndexRequestError(
                f"{what} returned HTTP {response.status_code} with a non-JSON body: "
                f"{response.text[:200]}",
                status_code=response.status_code,
            ) from e

    async def _request_json(
        self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        response: httpx.Response = await self._request(
            method, path, json_body=json_body
        )
        if not response.is_success:
            raise IndexRequestError(
                f"{method} {path} returned HTTP {response.status_code}: "
                f"{response.text[:500]}",
                status_code=response.status_code,
            )
        return self._decode(response, f"{method} {path}")

    async def ensure_index(self) -> bool:
        """
        Creates the index with its fixed mapping unless it already exists.

        Failures are logged and swallowed so that indexing can still be
        attempted against an index created out of band.

        Returns:
            bool: True if the index exists or was created, False otherwise.
        """
        try:
            head: httpx.Response = await self._request("HEAD", f"/{self.name}")
            if head.status_code == 200:
                logger.debug(f"Index '{self.name}' already exists.")
                return True

            response: httpx.Response = await self._request(
                "PUT",
                f"/{self.name}",
                json_body={"settings": INDEX_SETTINGS, "mappings": INDEX_MAPPINGS},
            )
            if response.is_success:
                logger.info(f"Index '{self.name}' created successfully.")
                return True
            if "resource_already_exists_exception" in response.text:
                logger.debug(f"Index '{self.name}' was created concurrently.")
                return True
            logger.error(
                f"Error creating index '{self.name}': HTTP {response.status_code} "
                f"{response.text[:500]}"
            )
        except IndexRequestError as e:
            logger.error(f"Error creating index '{self.name}': {e}")
        return False

    async def bulk(self, payload: bytes) -> Dict[str, Any]:
        """
        Sends one `_bulk` request.

        Args:
            payload (bytes): The NDJSON body built by `build_bulk_payload`.

        Returns:
            Dict[str, Any]: The parsed bulk response (`errors`, `items`).

        Raises:
            IndexRequestError: On transport errors or a non-2xx status.
        """
        response: httpx.Response = await self._request(
            "POST",
            f"/{self.name}/_bulk",
            content=payload,
            headers={"Content-Type": "application/x-ndjson"},
        )
        if not response.is_success:
            raise IndexRequestError(
                f"Bulk request returned HTTP {response.status_code}: "
                f"{response.text[:500]}",
                status_code=response.status_code,
            )
        return self._decode(response, "Bulk request")

    async def refresh(self) -> None:
        """Makes recently indexed documents visible to count and search."""
        await self._request_json("POST", f"/{self.name}/_refresh")

    async def count(self) -> int:
        body: Dict[str, Any] = await self._request_json("GET", f"/{self.name}/_count")
        return int(body["count"])

    async def sample(self, size: int) -> List[Dict[str, Any]]:
        """
        Fetches the first documents ordered by identifier.

        Args:
            size (int): Number of documents to return.

        Returns:
            List[Dict[str, Any]]: The `_source` of each hit.
        """
        body: Dict[str, Any] = await self._request_json(
            "POST",
            f"/{self.name}/_search",
            {"size": size, "sort": [{"id": "asc"}], "query": {"match_all": {}}},
        )
        return [hit.get("_source", {}) for hit in body["hits"]["hits"]]

    async def duplicate_ids(self, size: int) -> List[Dict[str, Any]]:
        """
        Runs a terms aggregation on `id` returning only repeated identifiers.

        Args:
            size (int): Maximum number of buckets to return.

        Returns:
            List[Dict[str, Any]]: Buckets (`key`, `doc_count`) with doc_count > 1.
        """
        body: Dict[str, Any] = await self._request_json(
            "POST",
            f"/{self.name}/_search",
            {
                "size": 0,
                "aggs": {
                    "duplicate_count": {
                        "terms": {"field": "id", "size": size, "min_doc_count": 2}
                    }
                },
            },
        )
        buckets: List[Dict[str, Any]] = body["aggregations"]["duplicate_count"][
            "buckets"
        ]
        return [bucket for bucket in buckets if bucket.get("doc_count", 0) > 1]
