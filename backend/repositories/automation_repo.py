# repositories/automation_repo.py
"""
Data access for the automation engine.

Every mutation of shared counters (execution claim, daily limit, cooldown,
rule stats) is a single atomic MongoDB operation. Nothing here does
read-modify-write in Python.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import (
    get_async_database,
    get_contacts_collection,
    get_contact_custom_fields_collection,
    get_contact_activities_collection,
    get_pipeline_stages_collection,
    get_call_dispositions_collection,
    get_profiles_collection,
    get_organizations_collection,
    get_business_hours_collection,
    get_email_settings_collection,
    get_templates_collection,
    get_automation_rules_collection,
    get_automation_executions_collection,
    get_automation_cooldowns_collection,
    get_ab_tests_collection,
    get_daily_limits_collection,
    get_unsubscribes_collection,
    get_suppressions_collection,
    get_email_conversations_collection,
)
from core.config import settings
from core.time_utils import utc_now

logger = logging.getLogger(__name__)

RULE_STATS = {"triggered", "sent", "failed"}


def new_id() -> str:
    return str(ObjectId())


def _out(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Expose Mongo's _id as id"""
    if doc is None:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return doc


def _day_key(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


class AutomationRepository:
    """Repository for automation rules, executions and the CRM data they read"""

    def __init__(self, db=None):
        self._db = db if db is not None else get_async_database()
        self._contacts = get_contacts_collection(self._db)
        self._custom_values = get_contact_custom_fields_collection(self._db)
        self._activities = get_contact_activities_collection(self._db)
        self._stages = get_pipeline_stages_collection(self._db)
        self._dispositions = get_call_dispositions_collection(self._db)
        self._profiles = get_profiles_collection(self._db)
        self._organizations = get_organizations_collection(self._db)
        self._business_hours = get_business_hours_collection(self._db)
        self._email_settings = get_email_settings_collection(self._db)
        self._templates = get_templates_collection(self._db)
        self._rules = get_automation_rules_collection(self._db)
        self._executions = get_automation_executions_collection(self._db)
        self._cooldowns = get_automation_cooldowns_collection(self._db)
        self._ab_tests = get_ab_tests_collection(self._db)
        self._daily_limits = get_daily_limits_collection(self._db)
        self._unsubscribes = get_unsubscribes_collection(self._db)
        self._suppressions = get_suppressions_collection(self._db)
        self._conversations = get_email_conversations_collection(self._db)

    # ============================================
    # RULES
    # ============================================

    async def get_rule(self, rule_id: str) -> Optional[Dict[str, Any]]:
        return _out(await self._rules.find_one({"_id": rule_id}))

    async def get_rules(self, rule_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        ids = [r for r in dict.fromkeys(rule_ids) if r]
        if not ids:
            return {}
        rules = {}
        async for doc in self._rules.find({"_id": {"$in": ids}}):
            rules[str(doc["_id"])] = _out(doc)
        return rules

    async def find_active_rules(self, org_id: str, trigger_type: str) -> List[Dict[str, Any]]:
        """Active rules for an org and trigger, highest priority first"""
        cursor = self._rules.find({
            "org_id": org_id,
            "trigger_type": trigger_type,
            "is_active": True,
        }).sort([("priority", DESCENDING), ("created_at", ASCENDING), ("_id", ASCENDING)])
        return [_out(doc) async for doc in cursor]

    async def find_active_rules_by_trigger(self, trigger_type: str) -> List[Dict[str, Any]]:
        """Active rules of one trigger type across all orgs"""
        cursor = self._rules.find({"trigger_type": trigger_type, "is_active": True})
        return [_out(doc) async for doc in cursor]

    async def list_rules(
        self,
        org_id: str,
        trigger_type: Optional[str] = None,
        is_active: Optional[bool] = None
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"org_id": org_id}
        if trigger_type:
            query["trigger_type"] = trigger_type
        if is_active is not None:
            query["is_active"] = is_active
        cursor = self._rules.find(query).sort([("priority", DESCENDING), ("created_at", ASCENDING)])
        return [_out(doc) async for doc in cursor]

    async def create_rule(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        now = utc_now()
        doc = {
            **doc,
            "_id": new_id(),
            "total_triggered": 0,
            "total_sent": 0,
            "total_failed": 0,
            "created_at": now,
            "updated_at": now,
        }
        await self._rules.insert_one(doc)
        return _out(doc)

    async def update_rule(self, rule_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        doc = await self._rules.find_one_and_update(
            {"_id": rule_id},
            {"$set": {**fields, "updated_at": utc_now()}},
            return_document=ReturnDocument.AFTER
        )
        return _out(doc)

    async def increment_rule_stat(self, rule_id: str, stat: str) -> None:
        if stat not in RULE_STATS:
            raise ValueError(f"Unknown rule stat: {stat}")
        await self._rules.update_one({"_id": rule_id}, {"$inc": {f"total_{stat}": 1}})

    # ============================================
    # CONTACTS & CRM LOOKUPS
    # ============================================

    async def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        return _out(await self._contacts.find_one({"_id": contact_id}))

    async def get_contact_custom_fields(self, contact_id: str) -> Dict[str, Any]:
        """Custom field values keyed by field name"""
        pipeline = [
            {"$match": {"contact_id": contact_id}},
            {"$lookup": {
                "from": "custom_fields",
                "localField": "custom_field_id",
                "foreignField": "_id",
                "as": "definition",
            }},
            {"$unwind": "$definition"},
            {"$project": {"_id": 0, "field_name": "$definition.field_name", "field_value": 1}},
        ]
        values: Dict[str, Any] = {}
        async for row in self._custom_values.aggregate(pipeline):
            if row.get("field_name"):
                values[row["field_name"]] = row.get("field_value")
        return values

    async def get_contacts_with_details(self, contact_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Contacts plus stage name, assigned user and custom fields in one aggregation"""
        ids = list(dict.fromkeys(contact_ids))
        if not ids:
            return {}

        pipeline = [
            {"$match": {"_id": {"$in": ids}}},
            {"$lookup": {
                "from": "pipeline_stages",
                "localField": "pipeline_stage_id",
                "foreignField": "_id",
                "as": "pipeline_stage",
            }},
            {"$lookup": {
                "from": "profiles",
                "localField": "assigned_to",
                "foreignField": "_id",
                "as": "assigned_user",
            }},
            {"$lookup": {
                "from": "contact_custom_fields",
                "let": {"cid": "$_id"},
                "pipeline": [
                    {"$match": {"$expr": {"$eq": ["$contact_id", "$$cid"]}}},
                    {"$lookup": {
                        "from": "custom_fields",
                        "localField": "custom_field_id",
                        "foreignField": "_id",
                        "as": "definition",
                    }},
                    {"$unwind": "$definition"},
                    {"$project": {"_id": 0, "field_name": "$definition.field_name", "field_value": 1}},
                ],
                "as": "custom_field_values",
            }},
        ]

        contacts: Dict[str, Dict[str, Any]] = {}
        async for doc in self._contacts.aggregate(pipeline):
            contact = _out(doc)
            stage = contact.pop("pipeline_stage", [])
            user = contact.pop("assigned_user", [])
            contact["pipeline_stage_name"] = stage[0].get("name") if stage else None
            contact["assigned_user"] = _out(user[0]) if user else None
            contact["custom_fields"] = {
                row["field_name"]: row.get("field_value")
                for row in contact.pop("custom_field_values", [])
                if row.get("field_name")
            }
            contacts[contact["id"]] = contact
        return contacts

    async def count_activities(self, contact_id: str, activity_type: str, since: datetime) -> int:
        return await self._activities.count_documents({
            "contact_id": contact_id,
            "activity_type": activity_type,
            "created_at": {"$gte": since},
        })

    async def get_pipeline_stage_name(self, stage_id: str) -> Optional[str]:
        stage = await self._stages.find_one({"_id": stage_id}, {"name": 1})
        return stage.get("name") if stage else None

    async def get_disposition(self, disposition_id: str) -> Optional[Dict[str, Any]]:
        return _out(await self._dispositions.find_one({"_id": disposition_id}))

    async def get_user_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        return _out(await self._profiles.find_one({"_id": user_id}))

    async def find_contacts_updated_between(
        self,
        org_id: str,
        start: datetime,
        end: datetime,
        limit: int,
        after_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Contacts whose last activity falls in [start, end), one page in _id order"""
        query: Dict[str, Any] = {
            "org_id": org_id,
            "updated_at": {"$gte": start, "$lt": end},
            "email": {"$nin": [None, ""]},
        }
        if after_id:
            query["_id"] = {"$gt": after_id}
        cursor = self._contacts.find(query).sort([("_id", ASCENDING)]).limit(limit)
        return [_out(doc) async for doc in cursor]

    async def find_contacts_by_date_field(
        self,
        org_id: str,
        field: str,
        start: datetime,
        end: datetime,
        limit: int,
        after_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {
            "org_id": org_id,
            field: {"$gte": start, "$lt": end},
            "email": {"$nin": [None, ""]},
        }
        if after_id:
            query["_id"] = {"$gt": after_id}
        cursor = self._contacts.find(query).sort([("_id", ASCENDING)]).limit(limit)
        return [_out(doc) async for doc in cursor]

    # ============================================
    # TEMPLATES & ORG SETTINGS
    # ============================================

    async def get_template(self, template_id: str) -> Optional[Dict[str, Any]]:
        return _out(await self._templates.find_one({"_id": template_id}))

    async def get_templates(self, template_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        ids = [t for t in dict.fromkeys(template_ids) if t]
        if not ids:
            return {}
        templates = {}
        async for doc in self._templates.find({"_id": {"$in": ids}}):
            templates[str(doc["_id"])] = _out(doc)
        return templates

    async def get_org_settings(self, org_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Organization documents plus their business hours, keyed by org id"""
        ids = [o for o in dict.fromkeys(org_ids) if o]
        if not ids:
            return {}

        orgs: Dict[str, Dict[str, Any]] = {}
        async for doc in self._organizations.find({"_id": {"$in": ids}}):
            org = _out(doc)
            org["business_hours"] = []
            orgs[org["id"]] = org

        async for row in self._business_hours.find({"org_id": {"$in": ids}}):
            org = orgs.setdefault(row["org_id"], {"id": row["org_id"], "business_hours": []})
            org["business_hours"].append(_out(row))
        return orgs

    async def get_email_settings(self, org_id: str) -> Optional[Dict[str, Any]]:
        return _out(await self._email_settings.find_one({"org_id": org_id}))

    async def get_email_settings_bulk(self, org_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        ids = [o for o in dict.fromkeys(org_ids) if o]
        if not ids:
            return {}
        found = {}
        async for doc in self._email_settings.find({"org_id": {"$in": ids}}):
            found[doc["org_id"]] = _out(doc)
        return found

    async def get_active_ab_test(self, rule_id: str) -> Optional[Dict[str, Any]]:
        return _out(await self._ab_tests.find_one({"rule_id": rule_id, "status": "active"}))

    # ============================================
    # EXECUTIONS
    # ============================================

    async def create_execution(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        now = utc_now()
        doc = {
            "retry_count": 0,
            "next_retry_at": None,
            "error_message": None,
            "sent_at": None,
            **doc,
            "_id": new_id(),
            "created_at": now,
            "updated_at": now,
        }
        await self._executions.insert_one(doc)
        return _out(doc)

    async def get_execution(self, execution_id: str) -> Optional[Dict[str, Any]]:
        return _out(await self._executions.find_one({"_id": execution_id}))

    async def find_due_executions(self, now: datetime, limit: int) -> List[Dict[str, Any]]:
        """Scheduled executions whose send time has passed, oldest first"""
        cursor = self._executions.find({
            "status": "scheduled",
            "scheduled_for": {"$lte": now},
        }).sort([("created_at", ASCENDING)]).limit(limit)
        return [_out(doc) async for doc in cursor]

    async def claim_execution(self, execution_id: str) -> Optional[Dict[str, Any]]:
        """scheduled -> pending in one conditional update; None if someone else got it"""
        doc = await self._executions.find_one_and_update(
            {"_id": execution_id, "status": "scheduled"},
            {"$set": {"status": "pending", "updated_at": utc_now()}},
            return_document=ReturnDocument.AFTER
        )
        return _out(doc)

    async def update_execution(self, execution_id: str, fields: Dict[str, Any]) -> None:
        await self._executions.update_one(
            {"_id": execution_id},
            {"$set": {**fields, "updated_at": utc_now()}}
        )

    async def list_executions(
        self,
        rule_id: str,
        status: Optional[str] = None,
        limit: int = 50
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"rule_id": rule_id}
        if status:
            query["status"] = status
        cursor = self._executions.find(query).sort([("created_at", DESCENDING)]).limit(limit)
        return [_out(doc) async for doc in cursor]

    # ============================================
    # COOLDOWNS
    # ============================================

    async def get_cooldown(self, rule_id: str, contact_id: str) -> Optional[Dict[str, Any]]:
        return _out(await self._cooldowns.find_one({"rule_id": rule_id, "contact_id": contact_id}))

    async def increment_cooldown(
        self,
        rule_id: str,
        contact_id: str,
        org_id: Optional[str],
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Upsert the (rule, contact) record: send_count + 1, last_sent_at = now"""
        now = now or utc_now()
        doc = await self._cooldowns.find_one_and_update(
            {"rule_id": rule_id, "contact_id": contact_id},
            {
                "$inc": {"send_count": 1},
                "$set": {"last_sent_at": now, "org_id": org_id},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER
        )
        return _out(doc)

    # ============================================
    # DAILY LIMITS
    # ============================================

    async def get_daily_send_count(self, org_id: str, contact_id: str, now: Optional[datetime] = None) -> int:
        doc = await self._daily_limits.find_one({
            "org_id": org_id,
            "contact_id": contact_id,
            "day": _day_key(now or utc_now()),
        })
        return doc.get("count", 0) if doc else 0

    async def check_and_increment_daily_limit(
        self,
        org_id: str,
        contact_id: str,
        max_per_day: int,
        now: Optional[datetime] = None
    ) -> bool:
        """Take one slot of today's allowance; False once max_per_day is reached.

        The guarded upsert either increments an under-limit counter or inserts
        a fresh one. If the counter exists at the limit, the upsert collides
        with the unique (org_id, contact_id, day) index instead.
        """
        now = now or utc_now()
        try:
            doc = await self._daily_limits.find_one_and_update(
                {
                    "org_id": org_id,
                    "contact_id": contact_id,
                    "day": _day_key(now),
                    "count": {"$lt": max_per_day},
                },
                {
                    "$inc": {"count": 1},
                    "$set": {"updated_at": now},
                    "$setOnInsert": {"created_at": now},
                },
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            return False
        return doc is not None and doc.get("count", 0) <= max_per_day

    async def release_daily_limit(self, org_id: str, contact_id: str, now: Optional[datetime] = None) -> None:
        """Give back a slot taken for an email that was not sent"""
        now = now or utc_now()
        await self._daily_limits.update_one(
            {"org_id": org_id, "contact_id": contact_id, "day": _day_key(now), "count": {"$gt": 0}},
            {"$inc": {"count": -1}, "$set": {"updated_at": now}}
        )

    # ============================================
    # COMPLIANCE
    # ============================================

    async def is_email_unsubscribed(self, org_id: str, email: str) -> bool:
        doc = await self._unsubscribes.find_one({"org_id": org_id, "email": email.lower()})
        return doc is not None

    async def is_email_suppressed(self, org_id: str, email: str) -> bool:
        doc = await self._suppressions.find_one({
            "org_id": org_id,
            "email": email.lower(),
            "is_active": {"$ne": False},
        })
        return doc is not None

    async def record_unsubscribe(self, doc: Dict[str, Any]) -> bool:
        """Idempotent per (org_id, email); True when this call created the entry"""
        now = utc_now()
        result = await self._unsubscribes.update_one(
            {"org_id": doc["org_id"], "email": doc["email"].lower()},
            {"$setOnInsert": {**doc, "email": doc["email"].lower(), "_id": new_id(), "created_at": now}},
            upsert=True
        )
        return result.upserted_id is not None

    # ============================================
    # EMAIL CONVERSATIONS (TRACKING)
    # ============================================

    async def record_email_conversation(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        now = utc_now()
        doc = {
            "open_count": 0,
            "click_count": 0,
            "cta_click_count": 0,
            "opened_at": None,
            "first_clicked_at": None,
            **doc,
            "_id": new_id(),
            "created_at": now,
        }
        await self._conversations.insert_one(doc)
        return _out(doc)

    async def find_conversation_by_tracking_id(self, tracking_pixel_id: str) -> Optional[Dict[str, Any]]:
        return _out(await self._conversations.find_one({"tracking_pixel_id": tracking_pixel_id}))

    async def find_conversation_by_unsubscribe_token(self, token: str) -> Optional[Dict[str, Any]]:
        return _out(await self._conversations.find_one({"unsubscribe_token": token}))

    async def record_conversation_event(
        self,
        conversation_id: str,
        counters: Iterable[str],
        first_seen_field: str,
        now: Optional[datetime] = None
    ) -> None:
        """Bump engagement counters and stamp first_seen_field once"""
        now = now or utc_now()
        await self._conversations.update_one(
            {"_id": conversation_id},
            {"$inc": {name: 1 for name in counters}}
        )
        await self._conversations.update_one(
            {"_id": conversation_id, first_seen_field: None},
            {"$set": {first_seen_field: now}}
        )


def build_repository(client=None) -> AutomationRepository:
    """Repository bound to a specific Motor client (Celery tasks) or the shared one"""
    if client is None:
        return AutomationRepository()
    return AutomationRepository(client[settings.MONGODB_DATABASE])


def get_repository() -> AutomationRepository:
    """FastAPI dependency"""
    return AutomationRepository()
