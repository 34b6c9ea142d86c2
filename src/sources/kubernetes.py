"""
Kubernetes Service Source - Reads Services from the Kubernetes REST API.

Uses the pod's service account token and cluster CA when running in-cluster.
Finalizer updates are JSON merge patches carrying the Service's
resourceVersion, so a concurrent modification is rejected instead of
overwritten.
"""

import asyncio
import json
import logging
import os
import ssl
from typing import Any, Dict, List, Optional, Tuple, Union

import aiohttp

from sources.base import ServiceSource, ServiceSourceError

logger = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"


class KubernetesServiceSource(ServiceSource):
    """Service source backed by the Kubernetes API server."""

    def __init__(
        self,
        api_url: str,
        token_path: str,
        ca_path: str,
        namespace: str = "",
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.token_path = token_path
        self.ca_path = ca_path
        self.namespace = namespace
        self._session = session
        self._owns_session = session is None
        self._ssl: Optional[Union[ssl.SSLContext, bool]] = None

    async def list_services(self) -> List[Dict[str, Any]]:
        if self.namespace:
            url = f"{self.api_url}/api/v1/namespaces/{self.namespace}/services"
        else:
            url = f"{self.api_url}/api/v1/services"

        status, body = await self._call("GET", url)
        if status != 200:
            raise ServiceSourceError(f"Failed to list services: {status} - {body}")

        items = json.loads(body).get("items", [])
        logger.debug(f"Listed {len(items)} services")
        return items

    async def add_finalizer(
        self,
        service: Dict[str, Any],
        finalizer: str,
        annotations: Optional[Dict[str, str]] = None,
    ) -> None:
        finalizers = list(service.get("metadata", {}).get("finalizers") or [])
        changed = self._changed_annotations(service, annotations)
        if finalizer in finalizers and not changed:
            return
        if finalizer not in finalizers:
            finalizers.append(finalizer)
        await self._patch_metadata(service, finalizers, changed)

    async def remove_finalizer(
        self,
        service: Dict[str, Any],
        finalizer: str,
        annotations: Optional[Dict[str, Optional[str]]] = None,
    ) -> None:
        finalizers = list(service.get("metadata", {}).get("finalizers") or [])
        if finalizer not in finalizers:
            return
        finalizers.remove(finalizer)
        await self._patch_metadata(
            service, finalizers, self._changed_annotations(service, annotations)
        )

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    # Private helper methods

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _get_ssl(self) -> Union[ssl.SSLContext, bool]:
        if self._ssl is None:
            if os.path.exists(self.ca_path):
                self._ssl = ssl.create_default_context(cafile=self.ca_path)
            else:
                self._ssl = True
        return self._ssl

    def _get_headers(self, content_type: Optional[str] = None) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        # Projected tokens rotate, so read the file on every call
        if os.path.exists(self.token_path):
            with open(self.token_path, "r") as f:
                headers["Authorization"] = f"Bearer {f.read().strip()}"
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    def _service_url(self, service: Dict[str, Any]) -> str:
        meta = service.get("metadata", {})
        return (
            f"{self.api_url}/api/v1/namespaces/{meta.get('namespace')}"
            f"/services/{meta.get('name')}"
        )

    @staticmethod
    def _changed_annotations(
        service: Dict[str, Any], annotations: Optional[Dict[str, Optional[str]]]
    ) -> Dict[str, Optional[str]]:
        current = service.get("metadata", {}).get("annotations") or {}
        return {
            k: v for k, v in (annotations or {}).items() if current.get(k) != v
        }

    async def _patch_metadata(
        self,
        service: Dict[str, Any],
        finalizers: List[str],
        annotations: Dict[str, Optional[str]],
    ) -> None:
        meta = service.get("metadata", {})
        patch = {
            "metadata": {
                "finalizers": finalizers,
                "resourceVersion": meta.get("resourceVersion"),
            }
        }
        if annotations:
            # null removes a key in a merge patch
            patch["metadata"]["annotations"] = annotations
        status, body = await self._call(
            "PATCH",
            self._service_url(service),
            data=json.dumps(patch),
            content_type=MERGE_PATCH,
        )
        if status == 404:
            logger.info(
                f"Service {meta.get('namespace')}/{meta.get('name')} is already gone"
            )
            return
        if status != 200:
            raise ServiceSourceError(
                f"Failed to update finalizers of "
                f"{meta.get('namespace')}/{meta.get('name')}: {status} - {body}"
            )

    async def _call(
        self,
        method: str,
        url: str,
        data: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> Tuple[int, str]:
        try:
            async with self._get_session().request(
                method,
                url,
                data=data,
                headers=self._get_headers(content_type),
                ssl=self._get_ssl(),
            ) as response:
                return response.status, await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ServiceSourceError(f"{method} {url} failed: {e}") from e
