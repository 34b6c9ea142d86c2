"""
UniFi Rule Store - Implements RuleStore against a UniFi Network controller.

Rules are managed through the controller's ``rest/portforward`` API. The
controller authenticates with a session cookie; when the session expires the
store logs in again once and retries the failed call.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from forwarding.address import ANY_SOURCE, Address, ScopeKey
from stores.base import (
    MalformedRuleError,
    RuleCreateError,
    RuleDeleteError,
    RuleListError,
    RuleStore,
)

logger = logging.getLogger(__name__)

LOGIN_REQUIRED = "api.err.LoginRequired"


class UniFiAPIError(Exception):
    """Raised when the controller answers with an unexpected status code."""

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body
        message = f"Invalid response code {status}"
        if body:
            message = f"{message}: {body}"
        super().__init__(message)


class UniFiRuleStore(RuleStore):
    """
    Rule store backed by a UniFi Network controller.

    The partition of a rule is the controller site, read from the address
    options under ``site_option`` and defaulting to ``default_site``.
    """

    def __init__(
        self,
        controller_url: str,
        username: str,
        password: str,
        default_site: str = "default",
        site_option: str = "site",
        verify_ssl: bool = True,
        timeout: int = 30,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.controller_url = controller_url.rstrip("/")
        self.username = username
        self.password = password
        self.default_site = default_site
        self.site_option = site_option
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None
        self._logged_in = False

    async def __aenter__(self) -> "UniFiRuleStore":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP session if this store created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
        self._logged_in = False

    # RuleStore interface

    async def list_rules(self, scope: ScopeKey) -> List[Address]:
        try:
            items = await self._list_items(scope)
        except (aiohttp.ClientError, asyncio.TimeoutError, UniFiAPIError) as e:
            raise RuleListError(
                f"Failed to list port forwarding rules for site "
                f"'{self.site_name(scope)}': {e}"
            ) from e

        return [self._parse_item(item, scope) for item in items]

    async def create_rule(self, address: Address) -> None:
        payload = {
            "name": address.name,
            "fwd_port": str(address.port),
            "fwd": address.ip,
            "dst_port": str(address.port),
            "enabled": True,
            "proto": "tcp_udp",
            "src": address.source_range or ANY_SOURCE,
        }
        try:
            await self._request("POST", self._rules_url(address.options), payload)
        except (aiohttp.ClientError, asyncio.TimeoutError, UniFiAPIError) as e:
            raise RuleCreateError(
                f"Failed to create port forwarding rule '{address.name}': {e}",
                address=address,
            ) from e

        logger.debug(f"Created port forwarding rule {address.name}")

    async def delete_rule(self, address: Address) -> None:
        try:
            items = await self._list_items(address.options)
            rule_id = self._find_rule_id(items, address)
            if rule_id is None:
                logger.debug(
                    f"Port forwarding rule {address.name} not found, nothing to delete"
                )
                return

            await self._request(
                "DELETE", f"{self._rules_url(address.options)}/{rule_id}"
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, UniFiAPIError) as e:
            raise RuleDeleteError(
                f"Failed to delete port forwarding rule '{address.name}': {e}",
                address=address,
            ) from e

        logger.debug(f"Deleted port forwarding rule {address.name} ({rule_id})")

    # Session handling

    async def login(self) -> None:
        """Authenticate and store the session cookie."""
        session = self._get_session()
        async with session.request(
            "POST",
            f"{self.controller_url}/api/login",
            json={"username": self.username, "password": self.password},
            ssl=self.verify_ssl,
        ) as resp:
            body = await resp.text()
            if resp.status >= 300:
                raise UniFiAPIError(resp.status, body)

        self._logged_in = True
        logger.info(f"Logged in to UniFi controller at {self.controller_url}")

    def site_name(self, scope: ScopeKey) -> str:
        return scope.get(self.site_option, self.default_site)

    # Private helper methods

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            # Controllers are commonly addressed by IP, which the default
            # cookie jar refuses to store cookies for
            self._session = aiohttp.ClientSession(
                cookie_jar=aiohttp.CookieJar(unsafe=True),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            self._owns_session = True
        return self._session

    def _rules_url(self, scope: ScopeKey) -> str:
        return f"{self.controller_url}/api/s/{self.site_name(scope)}/rest/portforward"

    async def _list_items(self, scope: ScopeKey) -> List[Dict[str, Any]]:
        body = await self._request("GET", self._rules_url(scope))
        data = body.get("data", [])
        if not isinstance(data, list):
            raise UniFiAPIError(200, f"unexpected rule list: {data!r}")
        return data

    async def _request(
        self,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]] = None,
        retry_login: bool = True,
    ) -> Dict[str, Any]:
        """Make an API call, logging in once if the session is missing or expired."""
        if not self._logged_in:
            await self.login()

        session = self._get_session()
        async with session.request(
            method, url, json=payload, ssl=self.verify_ssl
        ) as resp:
            status = resp.status
            body = await resp.text()

        if status == 401 and self._is_login_required(body):
            self._logged_in = False
            if retry_login:
                logger.info("UniFi session expired, logging in again")
                return await self._request(method, url, payload, retry_login=False)
        if status >= 300:
            raise UniFiAPIError(status, body)

        if not body:
            return {}
        try:
            decoded = json.loads(body)
        except ValueError as e:
            raise UniFiAPIError(status, f"unparseable response body: {e}") from e
        if not isinstance(decoded, dict):
            raise UniFiAPIError(status, f"expected a JSON object, got: {body}")
        return decoded

    @staticmethod
    def _is_login_required(body: str) -> bool:
        try:
            decoded = json.loads(body)
        except ValueError:
            return False
        if not isinstance(decoded, dict):
            return False
        return decoded.get("meta", {}).get("msg") == LOGIN_REQUIRED

    @staticmethod
    def _parse_item(item: Dict[str, Any], scope: ScopeKey) -> Address:
        if not isinstance(item, dict):
            raise MalformedRuleError(f"Cannot parse port forwarding rule {item!r}")
        name = item.get("name", "")
        try:
            return Address(
                name=name,
                port=int(item.get("fwd_port")),
                ip=item.get("fwd", ""),
                source_range=item.get("src", ""),
                options=scope,
            )
        except (TypeError, ValueError) as e:
            raise MalformedRuleError(
                f"Cannot parse port forwarding rule '{name}': {e}"
            ) from e

    @staticmethod
    def _find_rule_id(items: List[Dict[str, Any]], address: Address) -> Optional[str]:
        for item in items:
            if (
                isinstance(item, dict)
                and item.get("name") == address.name
                and item.get("fwd_port") == str(address.port)
                and item.get("fwd") == address.ip
            ):
                return item.get("_id")
        return None
