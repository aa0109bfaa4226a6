"""Tests for sync.orchestrator -- end-to-end sessions against a fake shop.

Covers:
- Scenario A: a new local row is created remotely once and its hash persisted
- Scenario B: an out-of-band edit is detected and pushed
- Scenario C: throttling backs off 1s, 2s, 4s and then succeeds
- Scenario D: a session interrupted after batch 3 of 10 resumes at batch 4
- Scenario E / idempotency: a second sync makes no write calls
- Read-only refusal, detection failure, dry run, pull, bidirectional
- Aborted sessions, corrupted snapshots, item isolation
"""

from pathlib import Path

import pytest

from catalog_sync.catalog.mirror import MirrorStore
from catalog_sync.catalog.models import EntityType
from catalog_sync.config_schema import BatchSizes
from catalog_sync.errors import AuthorizationError, ThrottledError
from catalog_sync.sync.models import (
    ExportSession,
    Operation,
    Priority,
    SessionStatus,
    SyncDirection,
)
from catalog_sync.sync.orchestrator import SyncOrchestrator, build_orchestrator
from catalog_sync.sync.store import SessionStore

PRODUCT = EntityType.PRODUCT
VARIANT = EntityType.VARIANT


def _orchestrator(config, client, clock, **kwargs):
    return SyncOrchestrator(
        config=config,
        client=client,
        store=SessionStore(Path(config.sync.state_dir)),
        mirror_store=MirrorStore(Path(config.sync.mirror_dir)),
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )


def _write_names(client):
    return [call[0] for call in client.calls]


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


class TestScenarioNewRecord:
    """A row with no stored hash is exported once and its hash persisted."""

    def test_new_row_created_once(
        self, config, fake_client, clock, mirror_files
    ):
        mirror_files.write(PRODUCT, [{"title": "Linen Shirt", "status": "active"}])

        report = _orchestrator(config, fake_client, clock).run("push")

        assert report.status == SessionStatus.COMPLETED
        assert _write_names(fake_client) == ["create_product"]
        assert len(report.completed) == 1
        assert report.completed[0].remote_id == "9001"

        rows = mirror_files.read(PRODUCT)
        assert len(rows) == 1
        assert rows[0]["id"] == "9001"
        assert rows[0]["_hash"] == mirror_files.hash_of(PRODUCT, rows[0])
        assert rows[0]["_last_synced_at"]
        assert rows[0]["_errors"] == ""

    def test_variants_follow_new_parent(
        self, config, fake_client, clock, mirror_files
    ):
        """Children of a provisional product are re-pointed after creation."""
        mirror_files.write(PRODUCT, [{"id": "new-1", "title": "Shirt"}])
        mirror_files.write(
            VARIANT,
            [
                {"product_id": "new-1", "price": "19.99", "option1": "S"},
                {"product_id": "new-1", "price": "19.99", "option1": "M"},
            ],
        )

        report = _orchestrator(config, fake_client, clock).run()

        assert report.status == SessionStatus.COMPLETED
        assert _write_names(fake_client) == [
            "create_product",
            "bulk_create_variants",
        ]
        assert fake_client.calls[1][1] == "9001"
        variants = mirror_files.read(VARIANT)
        assert {v["product_id"] for v in variants} == {"9001"}
        assert {v["id"] for v in variants} == {"9002", "9003"}


class TestScenarioOutOfBandEdit:
    """An edited mirrored field is detected from the recomputed hash."""

    def test_edit_is_pushed(self, config, fake_client, clock, mirror_files):
        mirror_files.write(
            PRODUCT, [{"id": "101", "title": "Linen Shirt"}], synced=True
        )
        fake_client.add_product(101, title="Linen Shirt")

        rows = mirror_files.read(PRODUCT)
        rows[0]["title"] = "Linen Shirt (Navy)"
        mirror_files.write(PRODUCT, rows)

        report = _orchestrator(config, fake_client, clock).run(
            "push", entity_types=["product"]
        )

        assert report.status == SessionStatus.COMPLETED
        assert _write_names(fake_client) == ["update_product"]
        name, product_id, payload = fake_client.calls[0]
        assert product_id == "101"
        assert payload["title"] == "Linen Shirt (Navy)"
        assert fake_client.products["101"]["title"] == "Linen Shirt (Navy)"

        row = mirror_files.read(PRODUCT)[0]
        assert row["_hash"] == mirror_files.hash_of(PRODUCT, row)

    def test_unchanged_rows_are_not_pushed(
        self, config, fake_client, clock, mirror_files
    ):
        mirror_files.write(
            PRODUCT,
            [{"id": "101", "title": "Shirt"}, {"id": "102", "title": "Hat"}],
            synced=True,
        )

        report = _orchestrator(config, fake_client, clock).run("push")

        assert report.status == SessionStatus.COMPLETED
        assert fake_client.calls == []
        assert report.planned == []


class TestScenarioStockEdit:
    """Stock and cost edits in the mirror reach the inventory item."""

    def test_stock_edit_is_pushed(
        self, config, fake_client, clock, mirror_files
    ):
        row = {
            "id": "201",
            "product_id": "20",
            "price": "9.00",
            "inventory_management": "shopify",
            "inventory_quantity": "5",
            "inventory_item_id": "4201",
        }
        mirror_files.write(VARIANT, [row], synced=True)
        fake_client.add_variant(
            201, 20, price="9.00", inventory_quantity=5, inventory_item_id=4201
        )

        rows = mirror_files.read(VARIANT)
        rows[0]["inventory_quantity"] = "42"
        rows[0]["cost"] = "3.50"
        mirror_files.write(VARIANT, rows)

        report = _orchestrator(config, fake_client, clock).run(
            "push", entity_types=["variant"]
        )

        assert report.status == SessionStatus.COMPLETED
        assert _write_names(fake_client) == [
            "update_variant",
            "update_inventory_item",
            "set_inventory_level",
        ]
        assert fake_client.variants["201"]["inventory_quantity"] == 42
        assert fake_client.variants["201"]["cost"] == "3.50"

        row = mirror_files.read(VARIANT)[0]
        assert row["_hash"] == mirror_files.hash_of(VARIANT, row)

    def test_pulled_stock_round_trips_without_writes(
        self, config, fake_client, clock, mirror_files
    ):
        fake_client.add_product(20, title="Shirt", status="active")
        fake_client.add_variant(
            201,
            20,
            price="9.00",
            cost="3.50",
            inventory_management="shopify",
            inventory_quantity=7,
        )
        _orchestrator(config, fake_client, clock).run("pull")
        report = _orchestrator(config, fake_client, clock).run("push")

        assert report.status == SessionStatus.COMPLETED
        assert fake_client.calls == []
        row = mirror_files.by_id(VARIANT)["201"]
        assert row["inventory_quantity"] == "7"
        assert row["cost"] == "3.50"


class TestScenarioIdenticalNewRows:
    """Two new rows with the same content become two remote records."""

    def test_both_rows_created(self, config, fake_client, clock, mirror_files):
        mirror_files.write(
            PRODUCT, [{"title": "Gift Card"}, {"title": "Gift Card"}]
        )

        report = _orchestrator(config, fake_client, clock).run("push")

        assert report.status == SessionStatus.COMPLETED
        assert _write_names(fake_client) == ["create_product"] * 2
        assert sorted(r.remote_id for r in report.completed) == ["9001", "9002"]
        rows = mirror_files.read(PRODUCT)
        assert [r["id"] for r in rows] == ["9001", "9002"]
        assert all(r["_hash"] for r in rows)
        assert set(fake_client.products) == {"9001", "9002"}


class TestScenarioThrottling:
    """Three throttling responses back off and then succeed."""

    def test_backoff_then_success(
        self, make_config, fake_client, clock, mirror_files
    ):
        config = make_config(max_retries=3)
        mirror_files.write(PRODUCT, [{"title": "Shirt"}])
        fake_client.fail_with = [
            ThrottledError("HTTP 429: slow down"),
            ThrottledError("HTTP 429: slow down"),
            ThrottledError("HTTP 429: slow down"),
        ]

        report = _orchestrator(config, fake_client, clock).run("push")

        assert report.status == SessionStatus.COMPLETED
        assert _write_names(fake_client) == ["create_product"] * 4
        assert clock.sleeps == [1.0, 2.0, 4.0]
        assert report.completed[0].attempts == 3
        assert report.remote_calls == 4

    def test_exhausted_item_fails_without_aborting(
        self, make_config, fake_client, clock, mirror_files
    ):
        config = make_config(max_retries=1)
        mirror_files.write(PRODUCT, [{"title": "Shirt"}, {"title": "Hat"}])
        fake_client.fail_with = [
            ThrottledError("HTTP 429: slow down"),
            ThrottledError("HTTP 429: slow down"),
        ]

        report = _orchestrator(config, fake_client, clock).run("push")

        assert report.status == SessionStatus.COMPLETED
        assert len(report.failed) == 1
        assert "Giving up after 2 attempts" in report.failed[0].error
        assert len(report.completed) == 1


class TestScenarioBackoffBudget:
    """Retry backoff never sleeps past the invocation's time budget."""

    @pytest.fixture
    def three_updates(self, fake_client, mirror_files):
        rows = [
            {"id": str(100 + i), "title": f"Item {i}", "_hash": "stale"}
            for i in range(1, 4)
        ]
        mirror_files.write(PRODUCT, rows)
        for i in range(1, 4):
            fake_client.add_product(100 + i, title="old")

    def test_backoff_stops_at_budget(
        self, make_config, fake_client, clock, mirror_files, three_updates
    ):
        config = make_config(time_budget_seconds=10, checkpoint_margin_seconds=0)
        fake_client.fail_with = [
            ThrottledError("HTTP 429: slow down") for _ in range(9)
        ]

        report = _orchestrator(config, fake_client, clock).run(
            "push", entity_types=["product"]
        )

        assert report.status == SessionStatus.INTERRUPTED
        assert sum(clock.sleeps) <= 10
        assert clock.sleeps == [1.0, 2.0, 4.0, 1.0, 2.0]
        assert len(report.failed) == 1
        assert report.remaining == 2
        rows = mirror_files.by_id(PRODUCT)
        assert rows["102"]["_hash"] == "stale"

    def test_deferred_items_resume(
        self, make_config, fake_client, clock, mirror_files, three_updates
    ):
        fake_client.fail_with = [
            ThrottledError("HTTP 429: slow down") for _ in range(4)
        ]

        first = _orchestrator(
            make_config(
                time_budget_seconds=10,
                checkpoint_margin_seconds=0,
                max_retries=5,
            ),
            fake_client,
            clock,
        ).run("push", entity_types=["product"])

        assert first.status == SessionStatus.INTERRUPTED
        assert first.remaining == 3
        assert clock.sleeps == [1.0, 2.0, 4.0]

        second = _orchestrator(
            make_config(time_budget_seconds=1000, max_retries=5),
            fake_client,
            clock,
        ).run("push", entity_types=["product"])

        assert second.resumed is True
        assert second.status == SessionStatus.COMPLETED
        assert len(second.completed) == 3
        assert [p["title"] for p in fake_client.products.values()] == [
            "Item 1",
            "Item 2",
            "Item 3",
        ]


class TestScenarioResume:
    """A session interrupted after batch 3 of 10 resumes at batch 4."""

    @pytest.fixture
    def ten_updates(self, fake_client, clock, mirror_files):
        rows = [
            {"id": str(100 + i), "title": f"Item {i}", "_hash": "stale"}
            for i in range(1, 11)
        ]
        mirror_files.write(PRODUCT, rows)
        for i in range(1, 11):
            fake_client.add_product(100 + i, title="old")
        # Every remote write takes ten seconds
        fake_client.on_write = lambda name: clock.advance(10)

    def _config(self, make_config, budget):
        return make_config(
            time_budget_seconds=budget,
            checkpoint_margin_seconds=0,
            batch_sizes=BatchSizes(update=1),
            promote_after_seconds=3600,
        )

    def test_interrupt_and_resume(
        self, make_config, fake_client, clock, mirror_files, ten_updates
    ):
        first = _orchestrator(
            self._config(make_config, 25), fake_client, clock
        ).run("push", entity_types=["product"])

        assert first.status == SessionStatus.INTERRUPTED
        assert first.batches == 3
        assert first.remaining == 7
        assert [c[1] for c in fake_client.calls] == ["101", "102", "103"]

        rows = mirror_files.by_id(PRODUCT)
        assert rows["103"]["_hash"] != "stale"
        assert rows["104"]["_hash"] == "stale"

        resumed_orch = _orchestrator(
            self._config(make_config, 1000), fake_client, clock
        )
        active = resumed_orch.status()
        assert active.status == SessionStatus.INTERRUPTED
        assert active.batches_completed == 3

        second = resumed_orch.run("push", entity_types=["product"])

        assert second.resumed is True
        assert second.session_id == first.session_id
        assert second.status == SessionStatus.COMPLETED
        assert second.batches == 7
        written = [c[1] for c in fake_client.calls]
        assert written == [str(100 + i) for i in range(1, 11)]

        store = resumed_orch.store
        assert store.active_session() is None
        session = store.last_session()
        assert session.batches_completed == 10
        assert session.invocations == 2
        assert session.processed == {"completed": 10}

        batch_numbers = [
            e.metrics["batch_number"]
            for e in store.load_audit(first.session_id)
            if e.operation == "batch_start"
        ]
        assert batch_numbers == list(range(1, 11))

    def test_read_only_resume_keeps_session_interrupted(
        self, make_config, fake_client, clock, mirror_files, ten_updates
    ):
        first = _orchestrator(
            self._config(make_config, 25), fake_client, clock
        ).run("push", entity_types=["product"])
        assert first.status == SessionStatus.INTERRUPTED

        blocked = _orchestrator(
            self._config(make_config, 1000),
            fake_client,
            clock,
            read_only=lambda: True,
        ).run("push")

        assert blocked.status == SessionStatus.INTERRUPTED
        assert "Read-only" in blocked.message
        assert blocked.remaining == 7
        assert len(fake_client.calls) == 3

    def test_resume_without_active_session(self, config, fake_client, clock):
        assert _orchestrator(config, fake_client, clock).resume() is None


class TestScenarioIdempotency:
    """Back-to-back syncs with no changes make no second-run writes."""

    def test_second_run_is_a_no_op(
        self, config, fake_client, clock, mirror_files
    ):
        mirror_files.write(PRODUCT, [{"id": "new-1", "title": "Shirt"}])
        mirror_files.write(
            VARIANT,
            [
                {"product_id": "new-1", "price": "19.99", "sku": "SH-S"},
                {"product_id": "new-1", "price": "21.00", "sku": "SH-M"},
            ],
        )

        first = _orchestrator(config, fake_client, clock).run()
        assert first.status == SessionStatus.COMPLETED
        assert len(first.completed) == 3
        writes = len(fake_client.calls)

        second = _orchestrator(config, fake_client, clock).run()

        assert second.status == SessionStatus.COMPLETED
        assert second.session_id != first.session_id
        assert second.processed_count == 0
        assert second.planned == []
        assert second.remote_calls == 0
        assert len(fake_client.calls) == writes

    def test_pull_then_push_is_a_no_op(
        self, config, fake_client, clock, mirror_files
    ):
        fake_client.add_product(1, title="Shirt", status="active")
        fake_client.add_variant(11, 1, price="19.99", sku="SH-S")

        _orchestrator(config, fake_client, clock).run("pull")
        report = _orchestrator(config, fake_client, clock).run("push")

        assert report.planned == []
        assert fake_client.calls == []


# ---------------------------------------------------------------------------
# State machine edges
# ---------------------------------------------------------------------------


class TestReadOnly:
    """The read-only flag is consulted once, at INITIATED."""

    def test_read_only_config_refuses_live_run(
        self, make_config, fake_client, clock, mirror_files
    ):
        config = make_config(read_only_mode=True)
        path = mirror_files.write(PRODUCT, [{"title": "Shirt"}])
        before = path.read_bytes()

        report = _orchestrator(config, fake_client, clock).run("push")

        assert report.status == SessionStatus.FAILED
        assert "Read-only" in report.message
        assert fake_client.calls == []
        assert path.read_bytes() == before

    def test_read_only_hook_overrides_config(
        self, config, fake_client, clock, mirror_files
    ):
        mirror_files.write(PRODUCT, [{"title": "Shirt"}])

        report = _orchestrator(
            config, fake_client, clock, read_only=lambda: True
        ).run("push")

        assert report.status == SessionStatus.FAILED
        assert fake_client.calls == []

    def test_dry_run_allowed_when_read_only(
        self, make_config, fake_client, clock, mirror_files
    ):
        config = make_config(read_only_mode=True)
        mirror_files.write(PRODUCT, [{"title": "Shirt"}])

        report = _orchestrator(config, fake_client, clock).run(dry_run=True)

        assert report.status == SessionStatus.COMPLETED
        assert len(report.planned) == 1


class TestDetectionFailure:
    """A failure while detecting changes writes nothing."""

    def test_fetch_failure_fails_session(
        self, config, fake_client, clock, mirror_files
    ):
        path = mirror_files.write(
            PRODUCT, [{"id": "1", "title": "Shirt"}], synced=True
        )
        before = path.read_bytes()

        def broken(fields=None, updated_at_min=None):
            raise AuthorizationError("HTTP 401: invalid token", 401)

        fake_client.list_products = broken

        orch = _orchestrator(config, fake_client, clock)
        report = orch.run("pull", entity_types=["product"])

        assert report.status == SessionStatus.FAILED
        assert report.message.startswith("Change detection failed")
        assert path.read_bytes() == before
        assert orch.store.active_session() is None
        assert orch.store.last_session().status == SessionStatus.FAILED


class TestDryRun:
    """Dry runs classify and preview without writing anything."""

    def test_preview_only(
        self, config, fake_client, clock, mirror_files, tmp_path
    ):
        path = mirror_files.write(
            PRODUCT,
            [
                {"title": "New"},
                {"id": "5", "title": "Gone", "_action": "delete"},
                {"title": "Never synced", "_action": "delete"},
            ],
        )
        rows = mirror_files.read(PRODUCT)
        rows[1]["_hash"] = "abc"
        mirror_files.write(PRODUCT, rows)
        before = path.read_bytes()

        report = _orchestrator(config, fake_client, clock).run(
            "push", dry_run=True
        )

        assert report.dry_run is True
        assert fake_client.calls == []
        assert path.read_bytes() == before
        assert not (tmp_path / "state").exists()

        planned = {(i.operation, i.priority) for i in report.planned}
        assert planned == {
            (Operation.CREATE, Priority.CRITICAL),
            (Operation.DELETE, Priority.LOW),
        }
        assert report.planned[0].operation == Operation.CREATE
        assert len(report.skipped) == 1


class TestAbort:
    """Session-aborting errors stop processing and keep unprocessed items."""

    def test_authorization_error_aborts(
        self, config, fake_client, clock, mirror_files
    ):
        rows = [
            {"id": str(i), "title": f"Item {i}", "_hash": "stale"}
            for i in (1, 2, 3)
        ]
        mirror_files.write(PRODUCT, rows)
        for i in (1, 2, 3):
            fake_client.add_product(i, title="old")
        fake_client.fail_with = [AuthorizationError("HTTP 401: revoked", 401)]

        orch = _orchestrator(config, fake_client, clock)
        report = orch.run("push", entity_types=["product"])

        assert report.status == SessionStatus.FAILED
        assert "AuthorizationError" in report.message
        assert report.remaining == 3
        assert len(fake_client.calls) == 1
        session = orch.store.last_session()
        assert len(session.queue_snapshot["items"]) == 3
        assert orch.store.active_session() is None

        # Credentials fixed: the next run starts over and succeeds
        retry_report = _orchestrator(config, fake_client, clock).run(
            "push", entity_types=["product"]
        )
        assert retry_report.status == SessionStatus.COMPLETED
        assert len(retry_report.completed) == 3


class TestCorruptedSnapshot:
    """An undecodable queue snapshot is discarded and detection reruns."""

    def test_fresh_start_after_corruption(
        self, config, fake_client, clock, mirror_files
    ):
        store = SessionStore(Path(config.sync.state_dir))
        stale = ExportSession(
            session_id="20260101T000000-deadbeef",
            direction="push",
            entity_types=[PRODUCT],
            status=SessionStatus.INTERRUPTED,
            queue_snapshot={"version": 99, "items": []},
            started_at="2026-01-01T00:00:00+00:00",
        )
        store.save_session(stale)
        store.set_active(stale.session_id)
        mirror_files.write(PRODUCT, [{"title": "Shirt"}])

        report = _orchestrator(config, fake_client, clock).run()

        assert report.status == SessionStatus.COMPLETED
        assert report.session_id != stale.session_id
        assert _write_names(fake_client) == ["create_product"]
        discarded = store.load_session(stale.session_id)
        assert discarded.status == SessionStatus.FAILED


class TestItemOutcomes:
    """Per-item failures are isolated from the rest of the batch."""

    def test_validation_failure_isolated(
        self, config, fake_client, clock, mirror_files
    ):
        mirror_files.write(
            PRODUCT, [{"title": "Shirt"}, {"title": ""}, {"title": "Hat"}]
        )

        report = _orchestrator(config, fake_client, clock).run("push")

        assert report.status == SessionStatus.COMPLETED
        assert len(report.completed) == 2
        assert len(report.failed) == 1
        assert report.failed[0].key == "product:new-2"
        assert _write_names(fake_client) == ["create_product"] * 2

        rows = mirror_files.by_id(PRODUCT)
        assert "title is required" in rows["new-2"]["_errors"]
        assert rows["new-2"]["_hash"] == ""

    def test_deletes(self, config, fake_client, clock, mirror_files):
        mirror_files.write(
            PRODUCT,
            [
                {"id": "5", "title": "Old", "_action": "delete"},
                {"id": "6", "title": "Already gone", "_action": "delete"},
                {"id": "7", "title": "Kept"},
            ],
            synced=True,
        )
        fake_client.add_product(5, title="Old")

        report = _orchestrator(config, fake_client, clock).run("push")

        assert report.status == SessionStatus.COMPLETED
        assert len(report.completed) == 1
        assert len(report.skipped) == 1
        assert "5" not in fake_client.products
        assert list(mirror_files.by_id(PRODUCT)) == ["7"]

    def test_never_synced_delete_dropped_locally(
        self, config, fake_client, clock, mirror_files
    ):
        mirror_files.write(
            PRODUCT, [{"title": "Scratch", "_action": "delete"}]
        )

        report = _orchestrator(config, fake_client, clock).run("push")

        assert report.status == SessionStatus.COMPLETED
        assert len(report.skipped) == 1
        assert fake_client.calls == []
        assert mirror_files.read(PRODUCT) == []

    def test_skip_rows_ignored(self, config, fake_client, clock, mirror_files):
        mirror_files.write(
            PRODUCT,
            [{"id": "1", "title": "Edited", "_hash": "stale", "_action": "skip"}],
        )

        report = _orchestrator(config, fake_client, clock).run("push")

        assert report.planned == []
        assert fake_client.calls == []
        assert mirror_files.read(PRODUCT)[0]["_action"] == "skip"


# ---------------------------------------------------------------------------
# Directions
# ---------------------------------------------------------------------------


class TestPull:
    """Pull applies the remote diff to the mirror only."""

    def test_pull_adds_updates_and_removes(
        self, config, fake_client, clock, mirror_files
    ):
        fake_client.add_product(1, title="Shirt", status="active")
        fake_client.add_product(2, title="Hat", status="draft")

        first = _orchestrator(config, fake_client, clock).run(
            "pull", entity_types=["product"]
        )
        assert first.status == SessionStatus.COMPLETED
        rows = mirror_files.read(PRODUCT)
        assert [r["id"] for r in rows] == ["1", "2"]
        assert all(r["_hash"] for r in rows)

        # A local row that was never exported
        rows.append({"title": "Local draft"})
        mirror_files.write(PRODUCT, rows)
        fake_client.products["1"]["title"] = "Shirt v2"
        del fake_client.products["2"]

        second = _orchestrator(config, fake_client, clock).run(
            "pull", entity_types=["product"]
        )

        assert second.status == SessionStatus.COMPLETED
        assert fake_client.calls == []
        titles = sorted(r["title"] for r in mirror_files.read(PRODUCT))
        assert titles == ["Local draft", "Shirt v2"]

    def test_incremental_pull_never_removes(
        self, config, fake_client, clock, mirror_files
    ):
        mirror_files.write(
            PRODUCT,
            [{"id": "1", "title": "Shirt"}, {"id": "2", "title": "Hat"}],
            synced=True,
        )
        fake_client.add_product(1, title="Shirt v2")

        report = _orchestrator(config, fake_client, clock).run(
            "pull", entity_types=["product"], since="2026-01-01T00:00:00Z"
        )

        assert report.status == SessionStatus.COMPLETED
        rows = mirror_files.by_id(PRODUCT)
        assert set(rows) == {"1", "2"}
        assert rows["1"]["title"] == "Shirt v2"

    def test_pull_items_direction(
        self, config, fake_client, clock, mirror_files
    ):
        fake_client.add_product(1, title="Shirt")

        report = _orchestrator(config, fake_client, clock).run(
            "pull", dry_run=True
        )

        assert [i.direction for i in report.planned] == [SyncDirection.PULL]
        assert report.planned[0].priority == Priority.NORMAL


class TestBidirectional:
    """Local edits win over remote edits of the same row."""

    def test_push_then_pull(self, config, fake_client, clock, mirror_files):
        mirror_files.write(
            PRODUCT,
            [{"id": "1", "title": "Shirt"}, {"id": "2", "title": "Hat"}],
            synced=True,
        )
        rows = mirror_files.read(PRODUCT)
        rows[0]["title"] = "Local title"
        mirror_files.write(PRODUCT, rows)

        fake_client.add_product(1, title="Remote title")
        fake_client.add_product(2, title="Hat v2")
        fake_client.add_product(3, title="Scarf")

        report = _orchestrator(config, fake_client, clock).run(
            "bidirectional", entity_types=["product"]
        )

        assert report.status == SessionStatus.COMPLETED
        assert _write_names(fake_client) == ["update_product"]
        assert fake_client.products["1"]["title"] == "Local title"
        rows = mirror_files.by_id(PRODUCT)
        assert rows["1"]["title"] == "Local title"
        assert rows["2"]["title"] == "Hat v2"
        assert rows["3"]["title"] == "Scarf"


# ---------------------------------------------------------------------------
# Hooks and wiring
# ---------------------------------------------------------------------------


class TestHooks:
    """Progress reporting and factory wiring."""

    def test_progress_reported(self, config, fake_client, clock, mirror_files):
        mirror_files.write(PRODUCT, [{"title": "Shirt"}])
        calls = []

        _orchestrator(
            config,
            fake_client,
            clock,
            progress=lambda message, pct: calls.append((message, pct)),
        ).run("push")

        messages = [m for m, _ in calls]
        assert messages[0] == "Sync initiated"
        assert "Sync detecting changes" in messages
        assert any(m.startswith("Batch 1:") for m in messages)
        assert calls[-1] == ("Sync completed", 100)
        percentages = [p for _, p in calls]
        assert percentages == sorted(percentages)

    def test_status_returns_last_session(
        self, config, fake_client, clock, mirror_files
    ):
        mirror_files.write(PRODUCT, [{"title": "Shirt"}])
        orch = _orchestrator(config, fake_client, clock)
        assert orch.status() is None

        report = orch.run("push")

        session = orch.status()
        assert session.session_id == report.session_id
        assert session.status == SessionStatus.COMPLETED

    def test_build_orchestrator_uses_config_dirs(self, config, fake_client):
        orch = build_orchestrator(config, client=fake_client)

        assert orch.client is fake_client
        assert orch.mirror_store.path_for(PRODUCT) == (
            Path(config.sync.mirror_dir) / "products.csv"
        )

    def test_unknown_direction_rejected(self, config, fake_client, clock):
        with pytest.raises(ValueError):
            _orchestrator(config, fake_client, clock).run("sideways")
