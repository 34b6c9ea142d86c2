"""Unit tests for the forwarding reconciler."""

import logging

import pytest

from conftest import FakeRuleStore
from forwarding.address import Address, ScopeKey
from forwarding.reconciler import (
    InconsistentScopeError,
    LoggingChangeLogger,
    Reconciler,
    ReconcileSummary,
)
from stores.base import RuleCreateError, RuleDeleteError, RuleListError

HOME = ScopeKey.from_mapping({"site": "home"})


def make_reconciler(store, change_logger=None, prefix="test-"):
    return Reconciler(rule_prefix=prefix, store=store, change_logger=change_logger)


# ==================== ReconcileSummary Tests ====================


class TestReconcileSummary:
    """Tests for ReconcileSummary dataclass."""

    def test_default_values(self):
        summary = ReconcileSummary()
        assert summary.deleted == []
        assert summary.created == []
        assert summary.has_changes is False

    def test_has_changes(self):
        summary = ReconcileSummary(created=[Address("a", 80, "1.2.3.4")])
        assert summary.has_changes is True


# ==================== LoggingChangeLogger Tests ====================


class TestLoggingChangeLogger:
    """Tests for the logging-backed ChangeLogger."""

    def test_formats_fields(self, caplog):
        log = logging.getLogger("test.changes")
        with caplog.at_level(logging.INFO, logger="test.changes"):
            LoggingChangeLogger(log).info("adding rule", name="x", port=80)
        assert "adding rule name=x port=80" in caplog.text

    def test_message_without_fields(self, caplog):
        log = logging.getLogger("test.changes")
        with caplog.at_level(logging.INFO, logger="test.changes"):
            LoggingChangeLogger(log).info("nothing to add")
        assert caplog.records[-1].getMessage() == "nothing to add"


# ==================== create_addresses Tests ====================


@pytest.mark.asyncio
class TestCreateAddresses:
    """Tests for Reconciler.create_addresses."""

    async def test_creates_all_on_empty_store(self, fake_store):
        reconciler = make_reconciler(fake_store)
        desired = [
            Address("ns-web", 80, "1.2.3.4"),
            Address("ns-web", 443, "1.2.3.4"),
            Address("ns-db", 5432, "1.2.3.5"),
        ]

        summary = await reconciler.create_addresses(desired)

        creates = [c[1] for c in fake_store.mutations()]
        assert len(creates) == len(desired)
        assert all(c[0] == "create" for c in fake_store.mutations())
        assert [a.name for a in creates] == [
            "test-ns-web-80",
            "test-ns-web-443",
            "test-ns-db-5432",
        ]
        assert [a.port for a in creates] == [80, 443, 5432]
        assert summary.created == creates
        assert summary.deleted == []

    async def test_idempotent(self, fake_store):
        reconciler = make_reconciler(fake_store)
        desired = [Address("ns-web", 80, "1.2.3.4", source_range="10.0.0.0/8")]

        await reconciler.create_addresses(desired)
        fake_store.calls.clear()
        summary = await reconciler.create_addresses(desired)

        assert fake_store.mutations() == []
        assert summary.has_changes is False

    async def test_replaces_stale_rule(self):
        """A rule whose port/ip changed is deleted and then recreated."""
        store = FakeRuleStore([Address("test-svc-8080", 8080, "5.6.7.8")])
        reconciler = make_reconciler(store)

        summary = await reconciler.create_addresses([Address("svc", 80, "1.2.3.4")])

        assert store.mutations() == [
            ("delete", Address("test-svc-8080", 8080, "5.6.7.8")),
            ("create", Address("test-svc-80", 80, "1.2.3.4")),
        ]
        assert [a.name for a in summary.deleted] == ["test-svc-8080"]
        assert [a.name for a in summary.created] == ["test-svc-80"]

    async def test_replaces_rule_with_changed_source_range(self):
        store = FakeRuleStore([Address("test-svc-80", 80, "1.2.3.4", "10.0.0.0/8")])
        reconciler = make_reconciler(store)

        await reconciler.create_addresses(
            [Address("svc", 80, "1.2.3.4", "192.168.0.0/16")]
        )

        assert [c[0] for c in store.mutations()] == ["delete", "create"]
        assert store.mutations()[1][1].source_range == "192.168.0.0/16"

    async def test_deletes_precede_creates(self):
        store = FakeRuleStore(
            [
                Address("test-a-1", 1, "1.1.1.1"),
                Address("test-b-2", 2, "2.2.2.2"),
            ]
        )
        reconciler = make_reconciler(store)

        await reconciler.create_addresses(
            [Address("a", 10, "1.1.1.1"), Address("b", 20, "2.2.2.2")]
        )

        ops = [c[0] for c in store.mutations()]
        assert ops == ["delete", "delete", "create", "create"]

    async def test_keeps_matching_ports_of_multi_port_service(self):
        """Only the changed port of a multi-port address set is replaced."""
        store = FakeRuleStore(
            [
                Address("test-ns-web-80", 80, "1.2.3.4"),
                Address("test-ns-web-8443", 8443, "1.2.3.4"),
            ]
        )
        reconciler = make_reconciler(store)

        await reconciler.create_addresses(
            [Address("ns-web", 80, "1.2.3.4"), Address("ns-web", 443, "1.2.3.4")]
        )

        assert store.mutations() == [
            ("delete", Address("test-ns-web-8443", 8443, "1.2.3.4")),
            ("create", Address("test-ns-web-443", 443, "1.2.3.4")),
        ]

    async def test_ignores_unrelated_rules(self):
        """Rules not carrying a desired prefix are never touched."""
        store = FakeRuleStore(
            [
                Address("manual-game-server", 25565, "192.168.1.50"),
                Address("test-other-80", 80, "9.9.9.9"),
            ]
        )
        reconciler = make_reconciler(store)

        await reconciler.create_addresses([Address("svc", 80, "1.2.3.4")])

        assert store.mutations() == [
            ("create", Address("test-svc-80", 80, "1.2.3.4")),
        ]

    async def test_scope_isolation(self):
        """Rules in another partition are neither listed nor modified."""
        store = FakeRuleStore([Address("test-svc-80", 80, "1.2.3.4")])
        reconciler = make_reconciler(store)

        await reconciler.create_addresses(
            [Address("svc", 80, "1.2.3.4", options=HOME)]
        )

        assert store.calls[0] == ("list", HOME)
        assert store.mutations() == [
            ("create", Address("test-svc-80", 80, "1.2.3.4", options=HOME)),
        ]
        # The default-partition rule survives untouched
        assert Address("test-svc-80", 80, "1.2.3.4") in store.rules

    async def test_any_source_equals_unrestricted(self):
        store = FakeRuleStore([Address("test-svc-80", 80, "1.2.3.4", "any")])
        reconciler = make_reconciler(store)

        summary = await reconciler.create_addresses([Address("svc", 80, "1.2.3.4")])

        assert store.mutations() == []
        assert summary.has_changes is False

    async def test_prefix_collision_treated_as_stale(self):
        """
        A rule for ``ns-svc2`` starts with the qualified name of ``ns-svc`` and
        is classified as stale by the prefix match.
        """
        store = FakeRuleStore([Address("p-ns-svc2-80", 80, "1.1.1.1")])
        reconciler = make_reconciler(store, prefix="p-")

        await reconciler.create_addresses([Address("ns-svc", 80, "1.1.1.1")])

        assert store.mutations() == [
            ("delete", Address("p-ns-svc2-80", 80, "1.1.1.1")),
            ("create", Address("p-ns-svc-80", 80, "1.1.1.1")),
        ]

    async def test_empty_desired_set(self):
        store = FakeRuleStore([Address("test-svc-80", 80, "1.2.3.4")])
        reconciler = make_reconciler(store)

        summary = await reconciler.create_addresses([])

        assert store.calls == [("list", ScopeKey())]
        assert summary.has_changes is False

    async def test_inconsistent_options_rejected(self, fake_store):
        reconciler = make_reconciler(fake_store)

        with pytest.raises(InconsistentScopeError):
            await reconciler.create_addresses(
                [
                    Address("a", 80, "1.2.3.4", options=HOME),
                    Address("b", 81, "1.2.3.4"),
                ]
            )

        assert fake_store.calls == []

    async def test_list_failure_aborts_before_mutation(self, fake_store):
        error = RuleListError("controller unreachable")
        fake_store.fail_on["list"] = error
        reconciler = make_reconciler(fake_store)

        with pytest.raises(RuleListError) as exc_info:
            await reconciler.create_addresses([Address("svc", 80, "1.2.3.4")])

        assert exc_info.value is error
        assert fake_store.mutations() == []

    async def test_create_failure_keeps_earlier_changes(self):
        store = FakeRuleStore([Address("test-svc-8080", 8080, "5.6.7.8")])
        error = RuleCreateError("rejected")
        store.fail_on["create"] = error
        reconciler = make_reconciler(store)

        with pytest.raises(RuleCreateError) as exc_info:
            await reconciler.create_addresses(
                [Address("svc", 80, "1.2.3.4"), Address("svc", 81, "1.2.3.4")]
            )

        assert exc_info.value is error
        # The stale delete went through, the second create was never tried
        assert [c[0] for c in store.mutations()] == ["delete", "create"]
        assert store.rules == []

    async def test_retry_after_failure_completes(self):
        store = FakeRuleStore()
        store.fail_on["create"] = RuleCreateError("rejected")
        reconciler = make_reconciler(store)
        desired = [Address("svc", 80, "1.2.3.4"), Address("svc", 81, "1.2.3.4")]

        with pytest.raises(RuleCreateError):
            await reconciler.create_addresses(desired)
        summary = await reconciler.create_addresses(desired)

        assert [a.name for a in summary.created] == ["test-svc-80", "test-svc-81"]
        assert len(store.rules) == 2

    async def test_logs_each_change(self, change_logger):
        store = FakeRuleStore([Address("test-svc-8080", 8080, "5.6.7.8")])
        reconciler = make_reconciler(store, change_logger=change_logger)

        await reconciler.create_addresses([Address("svc", 80, "1.2.3.4")])

        assert change_logger.messages == [
            (
                "deleting stale port forwarding rule",
                {"name": "test-svc-8080", "port": 8080, "ip": "5.6.7.8"},
            ),
            (
                "adding port forwarding rule",
                {"name": "test-svc-80", "port": 80, "ip": "1.2.3.4"},
            ),
        ]


# ==================== delete_addresses Tests ====================


@pytest.mark.asyncio
class TestDeleteAddresses:
    """Tests for Reconciler.delete_addresses."""

    async def test_deletes_matching_rules(self):
        store = FakeRuleStore(
            [
                Address("test-ns-web-80", 80, "1.2.3.4"),
                Address("test-ns-web-443", 443, "1.2.3.4"),
                Address("manual", 22, "1.2.3.9"),
            ]
        )
        reconciler = make_reconciler(store)

        summary = await reconciler.delete_addresses(
            [Address("ns-web", 80, "1.2.3.4"), Address("ns-web", 443, "1.2.3.4")]
        )

        assert [c[0] for c in store.mutations()] == ["delete", "delete"]
        assert [a.name for a in summary.deleted] == [
            "test-ns-web-80",
            "test-ns-web-443",
        ]
        assert store.rules == [Address("manual", 22, "1.2.3.9")]

    async def test_absent_rules_are_skipped(self, fake_store):
        reconciler = make_reconciler(fake_store)

        summary = await reconciler.delete_addresses([Address("svc", 80, "1.2.3.4")])

        assert fake_store.mutations() == []
        assert summary.has_changes is False

    async def test_only_exact_records_deleted(self):
        """A rule with the same name but a different ip is left alone."""
        store = FakeRuleStore([Address("test-svc-80", 80, "5.6.7.8")])
        reconciler = make_reconciler(store)

        await reconciler.delete_addresses([Address("svc", 80, "1.2.3.4")])

        assert store.mutations() == []

    async def test_matches_any_source(self):
        store = FakeRuleStore([Address("test-svc-80", 80, "1.2.3.4", "any")])
        reconciler = make_reconciler(store)

        summary = await reconciler.delete_addresses([Address("svc", 80, "1.2.3.4")])

        assert store.mutations() == [
            ("delete", Address("test-svc-80", 80, "1.2.3.4")),
        ]
        assert len(summary.deleted) == 1

    async def test_scoped_to_partition(self):
        store = FakeRuleStore(
            [
                Address("test-svc-80", 80, "1.2.3.4"),
                Address("test-svc-80", 80, "1.2.3.4", options=HOME),
            ]
        )
        reconciler = make_reconciler(store)

        await reconciler.delete_addresses(
            [Address("svc", 80, "1.2.3.4", options=HOME)]
        )

        assert store.rules == [Address("test-svc-80", 80, "1.2.3.4")]

    async def test_delete_failure_propagates(self):
        store = FakeRuleStore(
            [
                Address("test-svc-80", 80, "1.2.3.4"),
                Address("test-svc-81", 81, "1.2.3.4"),
            ]
        )
        error = RuleDeleteError("rejected")
        store.fail_on["delete"] = error
        reconciler = make_reconciler(store)

        with pytest.raises(RuleDeleteError) as exc_info:
            await reconciler.delete_addresses(
                [Address("svc", 80, "1.2.3.4"), Address("svc", 81, "1.2.3.4")]
            )

        assert exc_info.value is error
        assert len(store.mutations()) == 1

    async def test_inconsistent_options_rejected(self, fake_store):
        reconciler = make_reconciler(fake_store)

        with pytest.raises(InconsistentScopeError):
            await reconciler.delete_addresses(
                [Address("a", 80, "1.2.3.4"), Address("b", 81, "1.2.3.4", options=HOME)]
            )

    async def test_logs_each_delete(self, change_logger):
        store = FakeRuleStore([Address("test-svc-80", 80, "1.2.3.4")])
        reconciler = make_reconciler(store, change_logger=change_logger)

        await reconciler.delete_addresses([Address("svc", 80, "1.2.3.4")])

        assert change_logger.messages == [
            (
                "deleting port forwarding rule",
                {"name": "test-svc-80", "port": 80, "ip": "1.2.3.4"},
            )
        ]
