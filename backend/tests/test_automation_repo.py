"""Tests for the Motor repository's atomic operations, on an in-memory MongoDB."""

from datetime import timedelta

import pytest
from mongomock_motor import AsyncMongoMockClient
from pymongo.errors import DuplicateKeyError, OperationFailure

from database import ensure_indexes
from repositories.automation_repo import AutomationRepository
from tests.conftest import NOW


@pytest.fixture
def mongo_db():
    return AsyncMongoMockClient()["crm_automation_test"]


@pytest.fixture
def mongo_repo(mongo_db):
    return AutomationRepository(mongo_db)


async def _execution(repo, **fields):
    doc = {
        "org_id": "org1",
        "rule_id": "rule1",
        "contact_id": "c1",
        "trigger_type": "stage_change",
        "trigger_data": {},
        "status": "scheduled",
        "scheduled_for": NOW - timedelta(minutes=1),
    }
    doc.update(fields)
    return await repo.create_execution(doc)


class TestClaimExecution:
    """scheduled -> pending happens once."""

    @pytest.mark.asyncio
    async def test_second_claim_loses(self, mongo_repo):
        execution = await _execution(mongo_repo)

        claimed = await mongo_repo.claim_execution(execution["id"])
        again = await mongo_repo.claim_execution(execution["id"])

        assert claimed["status"] == "pending"
        assert claimed["id"] == execution["id"]
        assert again is None
        assert (await mongo_repo.get_execution(execution["id"]))["status"] == "pending"

    @pytest.mark.asyncio
    async def test_only_scheduled_rows_are_claimable(self, mongo_repo):
        execution = await _execution(mongo_repo, status="sent")
        assert await mongo_repo.claim_execution(execution["id"]) is None


class TestDueExecutions:
    """Sweep query."""

    @pytest.mark.asyncio
    async def test_only_due_scheduled_rows(self, mongo_repo):
        due = await _execution(mongo_repo)
        await _execution(mongo_repo, scheduled_for=NOW + timedelta(minutes=5))
        await _execution(mongo_repo, status="sent")
        await _execution(mongo_repo, status="failed")

        found = await mongo_repo.find_due_executions(NOW, limit=10)

        assert [e["id"] for e in found] == [due["id"]]

    @pytest.mark.asyncio
    async def test_limit(self, mongo_repo):
        for _ in range(3):
            await _execution(mongo_repo)
        assert len(await mongo_repo.find_due_executions(NOW, limit=2)) == 2


class TestDailyLimit:
    """Guarded upsert on (org_id, contact_id, day)."""

    @pytest.mark.asyncio
    async def test_slots_run_out(self, mongo_db, mongo_repo):
        await ensure_indexes(mongo_db)

        taken = [await mongo_repo.check_and_increment_daily_limit("org1", "c1", 2, now=NOW) for _ in range(3)]

        assert taken == [True, True, False]
        assert await mongo_repo.get_daily_send_count("org1", "c1", now=NOW) == 2

    @pytest.mark.asyncio
    async def test_counters_are_per_contact_and_day(self, mongo_db, mongo_repo):
        await ensure_indexes(mongo_db)
        assert await mongo_repo.check_and_increment_daily_limit("org1", "c1", 1, now=NOW)
        assert not await mongo_repo.check_and_increment_daily_limit("org1", "c1", 1, now=NOW)

        assert await mongo_repo.check_and_increment_daily_limit("org1", "c2", 1, now=NOW)
        assert await mongo_repo.check_and_increment_daily_limit("org1", "c1", 1, now=NOW + timedelta(days=1))

    @pytest.mark.asyncio
    async def test_released_slot_can_be_taken_again(self, mongo_db, mongo_repo):
        await ensure_indexes(mongo_db)
        assert await mongo_repo.check_and_increment_daily_limit("org1", "c1", 1, now=NOW)

        await mongo_repo.release_daily_limit("org1", "c1", now=NOW)
        await mongo_repo.release_daily_limit("org1", "c1", now=NOW)

        assert await mongo_repo.get_daily_send_count("org1", "c1", now=NOW) == 0
        assert await mongo_repo.check_and_increment_daily_limit("org1", "c1", 1, now=NOW)


class TestCooldownCounter:
    """Upserted (rule, contact) record."""

    @pytest.mark.asyncio
    async def test_increment_creates_then_counts(self, mongo_db, mongo_repo):
        await ensure_indexes(mongo_db)

        first = await mongo_repo.increment_cooldown("rule1", "c1", "org1", now=NOW)
        second = await mongo_repo.increment_cooldown("rule1", "c1", "org1", now=NOW + timedelta(hours=2))

        assert first["send_count"] == 1
        assert second["send_count"] == 2
        assert second["id"] == first["id"]

        record = await mongo_repo.get_cooldown("rule1", "c1")
        assert record["last_sent_at"] == NOW + timedelta(hours=2)
        assert record["created_at"] == NOW
        assert await mongo_repo.get_cooldown("rule1", "c2") is None


class TestRules:
    """Rule queries and counters."""

    @pytest.mark.asyncio
    async def test_active_rules_by_priority(self, mongo_repo):
        low = await mongo_repo.create_rule({"org_id": "org1", "trigger_type": "stage_change",
                                            "is_active": True, "priority": 1})
        high = await mongo_repo.create_rule({"org_id": "org1", "trigger_type": "stage_change",
                                             "is_active": True, "priority": 9})
        await mongo_repo.create_rule({"org_id": "org1", "trigger_type": "stage_change",
                                      "is_active": False, "priority": 5})

        rules = await mongo_repo.find_active_rules("org1", "stage_change")

        assert [r["id"] for r in rules] == [high["id"], low["id"]]

    @pytest.mark.asyncio
    async def test_increment_rule_stat(self, mongo_repo):
        rule = await mongo_repo.create_rule({"org_id": "org1", "trigger_type": "stage_change"})

        await mongo_repo.increment_rule_stat(rule["id"], "sent")
        await mongo_repo.increment_rule_stat(rule["id"], "sent")

        stored = await mongo_repo.get_rule(rule["id"])
        assert (stored["total_sent"], stored["total_failed"]) == (2, 0)
        with pytest.raises(ValueError):
            await mongo_repo.increment_rule_stat(rule["id"], "opened")


class TestContactPages:
    """Paged time-trigger scans."""

    @pytest.mark.asyncio
    async def test_after_id_walks_the_window(self, mongo_db, mongo_repo):
        start, end = NOW - timedelta(days=31), NOW - timedelta(days=30)
        for i in range(5):
            await mongo_db.contacts.insert_one({
                "_id": f"c{i}", "org_id": "org1", "email": f"c{i}@example.com", "updated_at": start + timedelta(hours=i),
            })
        await mongo_db.contacts.insert_one({"_id": "c9", "org_id": "org1", "email": "", "updated_at": start})

        first = await mongo_repo.find_contacts_updated_between("org1", start, end, 3)
        rest = await mongo_repo.find_contacts_updated_between("org1", start, end, 3, after_id=first[-1]["id"])

        assert [c["id"] for c in first] == ["c0", "c1", "c2"]
        assert [c["id"] for c in rest] == ["c3", "c4"]


class BrokenCollection:
    async def create_index(self, *args, **kwargs):
        raise OperationFailure("index build failed")


class BrokenDatabase:
    def __getattr__(self, name):
        return BrokenCollection()


class TestEnsureIndexes:
    """Index creation."""

    @pytest.mark.asyncio
    async def test_unique_keys_created(self, mongo_db):
        await ensure_indexes(mongo_db)
        await mongo_db.email_automation_cooldowns.insert_one({"rule_id": "rule1", "contact_id": "c1"})
        with pytest.raises(DuplicateKeyError):
            await mongo_db.email_automation_cooldowns.insert_one({"rule_id": "rule1", "contact_id": "c1"})

    @pytest.mark.asyncio
    async def test_failure_is_raised(self):
        with pytest.raises(OperationFailure):
            await ensure_indexes(BrokenDatabase())
