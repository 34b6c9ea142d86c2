"""Pytest configuration and fixtures."""

from typing import List, Optional

import pytest

from config import AnnotationConfig
from forwarding.address import Address, ScopeKey
from forwarding.reconciler import ChangeLogger
from sources.base import ServiceSource
from stores.base import RuleStore, RuleStoreError

ANNOTATION_PREFIX = "port-forwarding.lylefranklin.com"


class FakeRuleStore(RuleStore):
    """
    In-memory RuleStore that records every call in order.

    ``fail_on`` maps an operation name ("list", "create", "delete") to an
    error raised on the next call of that operation.
    """

    def __init__(self, rules: Optional[List[Address]] = None):
        self.rules: List[Address] = list(rules or [])
        self.calls: List[tuple] = []
        self.fail_on = {}
        self.closed = False

    async def list_rules(self, scope: ScopeKey) -> List[Address]:
        self.calls.append(("list", scope))
        self._maybe_fail("list")
        return [r for r in self.rules if r.options == scope]

    async def create_rule(self, address: Address) -> None:
        self.calls.append(("create", address))
        self._maybe_fail("create")
        self.rules.append(address)

    async def delete_rule(self, address: Address) -> None:
        self.calls.append(("delete", address))
        self._maybe_fail("delete")
        self.rules = [r for r in self.rules if r != address]

    async def close(self) -> None:
        self.closed = True

    def mutations(self) -> List[tuple]:
        return [c for c in self.calls if c[0] != "list"]

    def _maybe_fail(self, operation: str) -> None:
        error: Optional[RuleStoreError] = self.fail_on.pop(operation, None)
        if error is not None:
            raise error


class FakeServiceSource(ServiceSource):
    """
    ServiceSource that applies finalizer and annotation updates to the
    Service dicts in place, the way the next listing would show them.
    """

    def __init__(self, services=None):
        self.services = list(services or [])
        self.calls: List[tuple] = []

    async def list_services(self):
        return self.services

    async def add_finalizer(self, service, finalizer, annotations=None):
        self.calls.append(("add_finalizer", finalizer, annotations))
        meta = service.setdefault("metadata", {})
        finalizers = meta.get("finalizers") or []
        if finalizer not in finalizers:
            meta["finalizers"] = finalizers + [finalizer]
        self._update_annotations(meta, annotations)

    async def remove_finalizer(self, service, finalizer, annotations=None):
        self.calls.append(("remove_finalizer", finalizer, annotations))
        meta = service.setdefault("metadata", {})
        meta["finalizers"] = [f for f in meta.get("finalizers") or [] if f != finalizer]
        self._update_annotations(meta, annotations)

    @staticmethod
    def _update_annotations(meta, annotations):
        current = dict(meta.get("annotations") or {})
        for key, value in (annotations or {}).items():
            if value is None:
                current.pop(key, None)
            else:
                current[key] = value
        meta["annotations"] = current


class RecordingChangeLogger(ChangeLogger):
    """ChangeLogger stand-in that keeps every message."""

    def __init__(self):
        self.messages = []

    def info(self, msg, **fields):
        self.messages.append((msg, fields))


@pytest.fixture
def fake_store():
    return FakeRuleStore()


@pytest.fixture
def change_logger():
    return RecordingChangeLogger()


@pytest.fixture
def annotations():
    return AnnotationConfig(prefix=ANNOTATION_PREFIX)


@pytest.fixture
def sample_service():
    """An eligible LoadBalancer Service with two ports."""
    return {
        "metadata": {
            "name": "plex",
            "namespace": "media",
            "resourceVersion": "1234",
            "annotations": {
                f"{ANNOTATION_PREFIX}/enable": "true",
                f"{ANNOTATION_PREFIX}/site": "home",
            },
        },
        "spec": {
            "type": "LoadBalancer",
            "loadBalancerIP": "192.168.1.20",
            "ports": [
                {"name": "http", "port": 32400, "protocol": "TCP"},
                {"name": "dlna", "port": 1900, "protocol": "UDP"},
            ],
        },
    }


@pytest.fixture
def sample_document():
    """A desired-address document as accepted by the CLI."""
    return {
        "addresses": [
            {"name": "media-plex", "port": 32400, "ip": "192.168.1.20"},
            {
                "name": "ssh",
                "port": 22,
                "ip": "192.168.1.5",
                "source_range": "10.0.0.0/8",
                "options": {"site": "office"},
            },
        ]
    }
