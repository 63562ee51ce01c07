"""Unit tests for the HubSpot -> local deal sync pipeline.

Exercises SyncPipeline end to end against the in-memory repositories and
FakeHubSpot from conftest: connection states, idempotent upsert, derived
metrics, entity fetch degradation, association resolution, partial
failures, per-user serialization and re-scoring.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest

from src.dealpulse.deals.crm.associations import AssociationResolver
from src.dealpulse.deals.crm.sync import (
    SyncPipeline,
    compute_days_in_stage,
    compute_days_inactive,
)
from src.dealpulse.deals.crm.tokens import TokenLifecycleManager
from src.dealpulse.deals.schemas import (
    AssociationCandidate,
    RemoteDealSnapshot,
    RiskLevel,
    RiskPolicy,
    SyncStatus,
    TokenGrant,
)
from src.dealpulse.errors import AuthorizationError, TransientRemoteError
from tests.conftest import (
    NOW,
    USER_ID,
    FakeHubSpot,
    make_credential,
    make_hubspot_deal,
    transient,
)


class MutableClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _build_pipeline(credential_repo, deal_repo, policy_repo, hubspot, sleep_recorder, clock=None):
    clock = clock or MutableClock(NOW)
    tokens = TokenLifecycleManager(
        credential_repo,
        hubspot,
        client_id="client-abc",
        redirect_uri="http://localhost:5173/crm/callback",
        scopes="crm.objects.deals.read",
        sleep=sleep_recorder,
        clock=clock,
    )
    resolver = AssociationResolver(hubspot, sleep=sleep_recorder)
    return SyncPipeline(
        credential_repo,
        deal_repo,
        policy_repo,
        tokens,
        hubspot,
        resolver,
        sleep=sleep_recorder,
        clock=clock,
    )


@pytest.fixture
def pipeline(credential_repo, deal_repo, policy_repo, hubspot, sleep_recorder):
    return _build_pipeline(credential_repo, deal_repo, policy_repo, hubspot, sleep_recorder)


def _seed_two_deals(hubspot: FakeHubSpot) -> None:
    hubspot.deals = [
        make_hubspot_deal("d1", company_ids=["c1"], contact_ids=["p1"]),
        make_hubspot_deal(
            "d2",
            company_ids=["c2"],
            amount="150000",
            dealstage="contractsent",
            description="Customer mentioned budget concerns",
            hs_lastmodifieddate=(NOW - timedelta(days=20)).isoformat(),
            pipeline="default",
        ),
    ]
    hubspot.entities["companies"] = {
        "c1": {"name": "Acme Corp"},
        "c2": {"name": None, "domain": "globex.example"},
    }
    hubspot.entities["contacts"] = {"p1": {"firstname": "Ada", "lastname": "Lovelace"}}


# ── Connection States ───────────────────────────────────────────────────────


class TestConnectionStates:
    async def test_no_credential_reports_not_connected(self, pipeline, hubspot):
        report = await pipeline.sync_deals(USER_ID)

        assert report.status == SyncStatus.NOT_CONNECTED
        assert report.connected is False
        assert report.synced == 0
        assert report.total == 0
        assert "list_deals" not in hubspot.calls

    async def test_rejected_refresh_reports_reconnect_required(self, pipeline, credential_repo, hubspot):
        await credential_repo.save(make_credential(expires_at=NOW - timedelta(minutes=1)))
        hubspot.refresh_results = [AuthorizationError("revoked")]

        report = await pipeline.sync_deals(USER_ID)

        assert report.status == SyncStatus.RECONNECT_REQUIRED
        assert report.connected is False
        assert await credential_repo.get(USER_ID) is None
        assert "list_deals" not in hubspot.calls

    async def test_expired_token_is_refreshed_before_fetch(self, pipeline, credential_repo, hubspot):
        await credential_repo.save(make_credential(expires_at=NOW - timedelta(minutes=1)))
        hubspot.refresh_results = [
            TokenGrant(access_token="access-fresh", refresh_token="refresh-fresh", expires_in=1800)
        ]

        report = await pipeline.sync_deals(USER_ID)

        assert report.status == SyncStatus.OK
        assert hubspot.access_tokens_seen == ["access-fresh"]


# ── Sync Pass ───────────────────────────────────────────────────────────────


class TestSyncPass:
    async def test_sync_writes_enriched_deals(self, pipeline, credential_repo, deal_repo, hubspot):
        await credential_repo.save(make_credential())
        _seed_two_deals(hubspot)

        report = await pipeline.sync_deals(USER_ID)

        assert report.status == SyncStatus.OK
        assert report.connected is True
        assert (report.synced, report.total, report.failed) == (2, 2, 0)
        assert hubspot.access_tokens_seen == ["access-old"]

        d1 = await deal_repo.get_deal(USER_ID, "d1")
        assert d1.name == "Deal d1 name"
        assert d1.amount == 50000.0
        assert d1.currency == "USD"
        assert d1.stage == "qualifiedtobuy"
        assert d1.metadata.company == "Acme Corp"
        assert d1.metadata.contact == "Ada Lovelace"
        assert d1.metadata.company_id == "c1"
        assert d1.metadata.days_in_stage == 30
        assert d1.metadata.days_inactive == 2
        assert d1.metadata.stage_label == "Qualified to Buy"
        assert d1.metadata.risk_score == 0
        assert d1.metadata.risk_level == RiskLevel.LOW

        d2 = await deal_repo.get_deal(USER_ID, "d2")
        assert d2.metadata.company == "globex.example"
        assert d2.metadata.contact is None
        assert d2.metadata.stage_label == "Contract Sent"
        assert d2.metadata.days_inactive == 20
        assert d2.metadata.risk_score == 90
        assert d2.metadata.risk_level == RiskLevel.HIGH
        assert d2.metadata.risk_factors == [
            "High-value deal: $150,000 exceeds your threshold of $100,000",
            "Deal currently in a risky stage: contractsent",
            "Inactive for 20 days",
            'Keyword detected: "budget"',
        ]
        assert d2.metadata.extra == {"pipeline": "default"}

    async def test_sync_marks_credential_synced(self, pipeline, credential_repo, hubspot):
        await credential_repo.save(make_credential())
        _seed_two_deals(hubspot)

        await pipeline.sync_deals(USER_ID)

        assert (await credential_repo.get(USER_ID)).last_synced_at == NOW

    async def test_empty_page_still_marks_synced(self, pipeline, credential_repo, hubspot):
        await credential_repo.save(make_credential())

        report = await pipeline.sync_deals(USER_ID)

        assert (report.synced, report.total) == (0, 0)
        assert (await credential_repo.get(USER_ID)).last_synced_at == NOW
        assert not any(name.startswith("batch_read") for name in hubspot.calls)

    async def test_missing_name_and_stage_get_defaults(self, pipeline, credential_repo, deal_repo, hubspot):
        await credential_repo.save(make_credential())
        hubspot.deals = [make_hubspot_deal("d9", dealname="", dealstage=None, amount="n/a")]

        await pipeline.sync_deals(USER_ID)

        deal = await deal_repo.get_deal(USER_ID, "d9")
        assert deal.name == "Deal d9"
        assert deal.stage == "unknown"
        assert deal.amount is None

    async def test_record_without_id_is_counted_as_failure(self, pipeline, credential_repo, deal_repo, hubspot):
        await credential_repo.save(make_credential())
        hubspot.deals = [make_hubspot_deal("d1"), {"properties": {"dealname": "orphan"}}]

        report = await pipeline.sync_deals(USER_ID)

        assert (report.synced, report.total, report.failed) == (1, 2, 1)
        assert len(deal_repo.rows) == 1


# ── Idempotence ─────────────────────────────────────────────────────────────


class TestIdempotence:
    async def test_repeated_sync_never_duplicates(self, credential_repo, deal_repo, policy_repo, hubspot, sleep_recorder):
        clock = MutableClock(NOW)
        pipeline = _build_pipeline(credential_repo, deal_repo, policy_repo, hubspot, sleep_recorder, clock)
        await credential_repo.save(make_credential())
        _seed_two_deals(hubspot)

        first = await pipeline.sync_deals(USER_ID)
        snapshot = {key: deal.model_copy() for key, deal in deal_repo.rows.items()}

        for minutes in (1, 2, 3):
            clock.now = NOW + timedelta(minutes=minutes)
            report = await pipeline.sync_deals(USER_ID)
            assert report == first

        assert len(deal_repo.rows) == 2
        for key, deal in deal_repo.rows.items():
            before = snapshot[key]
            assert deal.id == before.id
            assert deal.metadata == before.metadata
            assert deal.updated_at == NOW
            assert deal.synced_at == NOW + timedelta(minutes=3)

    async def test_remote_change_updates_in_place(self, credential_repo, deal_repo, policy_repo, hubspot, sleep_recorder):
        clock = MutableClock(NOW)
        pipeline = _build_pipeline(credential_repo, deal_repo, policy_repo, hubspot, sleep_recorder, clock)
        await credential_repo.save(make_credential())
        _seed_two_deals(hubspot)
        await pipeline.sync_deals(USER_ID)

        hubspot.deals[0]["properties"]["dealname"] = "Renamed"
        clock.now = NOW + timedelta(minutes=5)
        await pipeline.sync_deals(USER_ID)

        d1 = await deal_repo.get_deal(USER_ID, "d1")
        assert len(deal_repo.rows) == 2
        assert d1.name == "Renamed"
        assert d1.updated_at == NOW + timedelta(minutes=5)
        assert (await deal_repo.get_deal(USER_ID, "d2")).updated_at == NOW


# ── Derived Metrics ─────────────────────────────────────────────────────────


class TestDerivedMetrics:
    def test_stage_duration_zero_falls_back_to_creation_age(self):
        snapshot = RemoteDealSnapshot(
            remote_id="d1",
            time_in_current_stage_millis=0,
            created_at=NOW - timedelta(days=10),
        )
        assert compute_days_in_stage(snapshot, NOW) == 10

    def test_stage_duration_absent_falls_back_to_creation_age(self):
        snapshot = RemoteDealSnapshot(remote_id="d1", created_at=NOW - timedelta(days=10, hours=5))
        assert compute_days_in_stage(snapshot, NOW) == 10

    def test_stage_duration_in_millis_is_floored_to_days(self):
        millis = int(timedelta(days=3, hours=23).total_seconds() * 1000)
        snapshot = RemoteDealSnapshot(
            remote_id="d1",
            time_in_current_stage_millis=millis,
            created_at=NOW - timedelta(days=40),
        )
        assert compute_days_in_stage(snapshot, NOW) == 3

    def test_no_stage_data_at_all_is_zero(self):
        assert compute_days_in_stage(RemoteDealSnapshot(remote_id="d1"), NOW) == 0

    def test_days_inactive_defaults_to_zero(self):
        assert compute_days_inactive(RemoteDealSnapshot(remote_id="d1"), NOW) == 0

    def test_future_modification_clamps_to_zero(self):
        snapshot = RemoteDealSnapshot(remote_id="d1", last_modified_at=NOW + timedelta(days=1))
        assert compute_days_inactive(snapshot, NOW) == 0

    async def test_stage_fallback_through_pipeline(self, pipeline, credential_repo, deal_repo, hubspot):
        await credential_repo.save(make_credential())
        hubspot.deals = [
            make_hubspot_deal(
                "d1",
                hs_v2_time_in_current_stage="0",
                createdate=(NOW - timedelta(days=10)).isoformat(),
                hs_lastmodifieddate=None,
            )
        ]

        await pipeline.sync_deals(USER_ID)

        deal = await deal_repo.get_deal(USER_ID, "d1")
        assert deal.metadata.days_in_stage == 10
        assert deal.metadata.days_inactive == 0


# ── Associated Entities ─────────────────────────────────────────────────────


class TestEntityFetch:
    async def test_batch_failure_falls_back_to_per_id_reads(self, pipeline, credential_repo, deal_repo, hubspot, sleep_recorder):
        await credential_repo.save(make_credential())
        _seed_two_deals(hubspot)
        hubspot.batch_read_error = transient()

        report = await pipeline.sync_deals(USER_ID)

        assert report.synced == 2
        assert report.degraded_fetches == ["companies", "contacts"]
        assert hubspot.calls["batch_read:companies"] == 4
        assert hubspot.calls["read_object:companies"] == 2
        assert hubspot.calls["read_object:contacts"] == 1
        assert (await deal_repo.get_deal(USER_ID, "d1")).metadata.company == "Acme Corp"

    async def test_each_entity_fetched_once_across_deals(self, pipeline, credential_repo, hubspot):
        await credential_repo.save(make_credential())
        hubspot.deals = [
            make_hubspot_deal("d1", company_ids=["c1"]),
            make_hubspot_deal("d2", company_ids=["c1"]),
        ]
        hubspot.entities["companies"] = {"c1": {"name": "Acme Corp"}}

        await pipeline.sync_deals(USER_ID)

        assert hubspot.calls["batch_read:companies"] == 1
        assert "batch_read:contacts" not in hubspot.calls

    async def test_unknown_entity_leaves_display_name_empty(self, pipeline, credential_repo, deal_repo, hubspot):
        await credential_repo.save(make_credential())
        hubspot.deals = [make_hubspot_deal("d1", company_ids=["ghost"])]

        report = await pipeline.sync_deals(USER_ID)

        deal = await deal_repo.get_deal(USER_ID, "d1")
        assert report.synced == 1
        assert deal.metadata.company_id == "ghost"
        assert deal.metadata.company is None

    async def test_multiple_companies_resolved_by_primary_label(self, pipeline, credential_repo, deal_repo, hubspot):
        await credential_repo.save(make_credential())
        hubspot.deals = [make_hubspot_deal("d1", company_ids=["c1", "c2"], contact_ids=["p1"])]
        hubspot.entities["companies"] = {"c1": {"name": "Acme"}, "c2": {"name": "Globex"}}
        hubspot.associations[("d1", "companies")] = [
            AssociationCandidate(entity_id="c1"),
            AssociationCandidate(entity_id="c2", is_primary=True),
        ]

        await pipeline.sync_deals(USER_ID)

        deal = await deal_repo.get_deal(USER_ID, "d1")
        assert deal.metadata.company == "Globex"
        assert hubspot.calls["get_associations"] == 1

    async def test_association_failure_does_not_fail_deal(self, pipeline, credential_repo, deal_repo, hubspot):
        await credential_repo.save(make_credential())
        hubspot.deals = [make_hubspot_deal("d1", company_ids=["c1", "c2"])]
        hubspot.entities["companies"] = {"c1": {"name": "Acme"}, "c2": {"name": "Globex"}}
        hubspot.association_error = transient()

        report = await pipeline.sync_deals(USER_ID)

        assert report.synced == 1
        assert (await deal_repo.get_deal(USER_ID, "d1")).metadata.company == "Acme"


# ── Failures ────────────────────────────────────────────────────────────────


class TestFailures:
    async def test_partial_upsert_failure_does_not_abort_batch(self, pipeline, credential_repo, deal_repo, hubspot):
        await credential_repo.save(make_credential())
        hubspot.deals = [make_hubspot_deal(f"d{i}") for i in (1, 2, 3)]
        deal_repo.fail_remote_ids = {"d2"}

        report = await pipeline.sync_deals(USER_ID)

        assert report.status == SyncStatus.OK
        assert (report.synced, report.total, report.failed) == (2, 3, 1)
        assert report.errors[0].startswith("d2:")
        assert set(remote_id for _, remote_id in deal_repo.rows) == {"d1", "d3"}
        assert deal_repo.upsert_calls == 3

    async def test_transient_list_failure_is_retried(self, pipeline, credential_repo, hubspot, sleep_recorder):
        await credential_repo.save(make_credential())
        _seed_two_deals(hubspot)
        hubspot.list_deals_errors = [transient()]

        report = await pipeline.sync_deals(USER_ID)

        assert report.synced == 2
        assert sleep_recorder.delays == [1]

    async def test_exhausted_list_failure_surfaces_and_writes_nothing(self, pipeline, credential_repo, deal_repo, hubspot, sleep_recorder):
        await credential_repo.save(make_credential())
        _seed_two_deals(hubspot)
        hubspot.list_deals_errors = [transient() for _ in range(4)]

        with pytest.raises(TransientRemoteError):
            await pipeline.sync_deals(USER_ID)

        assert sleep_recorder.delays == [1, 2, 4]
        assert deal_repo.rows == {}
        credential = await credential_repo.get(USER_ID)
        assert credential is not None
        assert credential.last_synced_at is None


# ── Concurrency ─────────────────────────────────────────────────────────────


class BlockingHubSpot(FakeHubSpot):
    """Holds list_deals for one access token until released."""

    def __init__(self, blocked_token: str) -> None:
        super().__init__()
        self.blocked_token = blocked_token
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.in_flight = 0
        self.max_in_flight = 0

    async def list_deals(self, access_token, properties, associations, limit=100):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if access_token == self.blocked_token:
                self.entered.set()
                await self.release.wait()
            return await super().list_deals(access_token, properties, associations, limit)
        finally:
            self.in_flight -= 1


class TestConcurrency:
    async def test_same_user_syncs_are_serialized(self, credential_repo, deal_repo, policy_repo, sleep_recorder):
        hubspot = BlockingHubSpot(blocked_token="access-old")
        pipeline = _build_pipeline(credential_repo, deal_repo, policy_repo, hubspot, sleep_recorder)
        await credential_repo.save(make_credential())
        _seed_two_deals(hubspot)

        first = asyncio.create_task(pipeline.sync_deals(USER_ID))
        second = asyncio.create_task(pipeline.sync_deals(USER_ID))
        await asyncio.wait_for(hubspot.entered.wait(), timeout=1)
        for _ in range(5):
            await asyncio.sleep(0)
        assert hubspot.calls["list_deals"] == 1

        hubspot.release.set()
        reports = await asyncio.gather(first, second)

        assert hubspot.max_in_flight == 1
        assert hubspot.calls["list_deals"] == 2
        assert [r.synced for r in reports] == [2, 2]
        assert len(deal_repo.rows) == 2

    async def test_other_users_are_not_blocked(self, credential_repo, deal_repo, policy_repo, sleep_recorder):
        hubspot = BlockingHubSpot(blocked_token="access-old")
        pipeline = _build_pipeline(credential_repo, deal_repo, policy_repo, hubspot, sleep_recorder)
        await credential_repo.save(make_credential())
        await credential_repo.save(make_credential(user_id="user-456", access_token="access-b"))
        _seed_two_deals(hubspot)

        blocked = asyncio.create_task(pipeline.sync_deals(USER_ID))
        await asyncio.wait_for(hubspot.entered.wait(), timeout=1)

        other = await asyncio.wait_for(pipeline.sync_deals("user-456"), timeout=1)
        assert other.synced == 2
        assert not blocked.done()

        hubspot.release.set()
        assert (await blocked).synced == 2
        assert len(deal_repo.rows) == 4


# ── Re-scoring ──────────────────────────────────────────────────────────────


class TestRescore:
    async def test_rescore_applies_current_policy(self, pipeline, credential_repo, deal_repo, policy_repo, hubspot):
        await credential_repo.save(make_credential())
        _seed_two_deals(hubspot)
        await pipeline.sync_deals(USER_ID)
        assert (await deal_repo.get_deal(USER_ID, "d1")).metadata.risk_score == 0

        await policy_repo.save(USER_ID, RiskPolicy(risky_stages=["qualifiedtobuy"]))
        count = await pipeline.rescore_deals(USER_ID)

        d1 = await deal_repo.get_deal(USER_ID, "d1")
        assert count == 2
        assert d1.metadata.risk_score == 25
        assert d1.metadata.risk_factors == ["Deal currently in a risky stage: qualifiedtobuy"]
        assert d1.metadata.company == "Acme Corp"
        assert d1.name == "Deal d1 name"

    async def test_rescore_without_deals(self, pipeline):
        assert await pipeline.rescore_deals(USER_ID) == 0
