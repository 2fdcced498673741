import logging
from typing import Optional, Dict, Any
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from core.config import settings

logger = logging.getLogger(__name__)

# ===== CLIENT INSTANCES =====
async_client: Optional[AsyncIOMotorClient] = None
async_database: Optional[AsyncIOMotorDatabase] = None

# ===== INITIALIZATION FLAGS =====
_async_initialized = False
_indexes_created = False


# ============================================
# CLIENT INITIALIZATION
# ============================================

def create_async_client(app_name: str = "crm_automation_async") -> AsyncIOMotorClient:
    """Build a Motor client with the configured pool settings"""
    return AsyncIOMotorClient(
        settings.MONGODB_URI,
        maxPoolSize=settings.DB_MAX_POOL_SIZE,
        minPoolSize=settings.DB_MIN_POOL_SIZE,
        maxIdleTimeMS=settings.DB_MAX_IDLE_TIME_MS,
        connectTimeoutMS=settings.DB_CONNECT_TIMEOUT_MS,
        serverSelectionTimeoutMS=settings.DB_SERVER_SELECTION_TIMEOUT_MS,
        retryWrites=True,
        retryReads=True,
        appName=app_name
    )


def initialize_async_client() -> AsyncIOMotorClient:
    """Initialize async MongoDB client with error handling (call once at startup)"""
    global async_client, async_database, _async_initialized

    if async_client is not None and _async_initialized:
        return async_client

    try:
        async_client = create_async_client()
        async_database = async_client[settings.MONGODB_DATABASE]
        _async_initialized = True
        logger.info("✅ Async MongoDB client initialized")

    except Exception as e:
        logger.error(f"❌ Failed to initialize async MongoDB client: {e}")
        raise

    return async_client


def get_async_database() -> AsyncIOMotorDatabase:
    """Get async database instance"""
    if async_database is None:
        initialize_async_client()
    return async_database


# ============================================
# COLLECTION GETTERS
# ============================================

def _db(db=None) -> AsyncIOMotorDatabase:
    return db if db is not None else get_async_database()


# CRM Collections (read by the engine)
def get_contacts_collection(db=None):
    return _db(db).contacts

def get_contact_custom_fields_collection(db=None):
    """Per-contact custom field values"""
    return _db(db).contact_custom_fields

def get_custom_fields_collection(db=None):
    """Custom field definitions (field_name, field_type)"""
    return _db(db).custom_fields

def get_contact_activities_collection(db=None):
    return _db(db).contact_activities

def get_pipeline_stages_collection(db=None):
    return _db(db).pipeline_stages

def get_call_dispositions_collection(db=None):
    return _db(db).call_dispositions

def get_profiles_collection(db=None):
    """CRM users (assignees)"""
    return _db(db).profiles


# Org Settings Collections
def get_organizations_collection(db=None):
    return _db(db).organizations

def get_business_hours_collection(db=None):
    return _db(db).org_business_hours

def get_email_settings_collection(db=None):
    """Sender identity and SMTP settings per org"""
    return _db(db).email_settings

def get_templates_collection(db=None):
    return _db(db).email_templates


# Automation Collections
def get_automation_rules_collection(db=None):
    return _db(db).email_automation_rules

def get_automation_executions_collection(db=None):
    return _db(db).email_automation_executions

def get_automation_cooldowns_collection(db=None):
    return _db(db).email_automation_cooldowns

def get_ab_tests_collection(db=None):
    return _db(db).automation_ab_tests

def get_daily_limits_collection(db=None):
    """Per-contact daily automation send counters"""
    return _db(db).email_daily_limits


# Compliance & Tracking Collections
def get_unsubscribes_collection(db=None):
    return _db(db).email_unsubscribes

def get_suppressions_collection(db=None):
    return _db(db).email_suppressions

def get_email_conversations_collection(db=None):
    """Sent automation emails with tracking ids and counters"""
    return _db(db).email_conversations


# ============================================
# INDEXES
# ============================================

async def ensure_indexes(db=None):
    """Create the indexes the automation engine relies on"""
    global _indexes_created

    if _indexes_created and db is None:
        return

    try:
        logger.info("🔧 Creating database indexes...")

        rules = get_automation_rules_collection(db)
        await rules.create_index([("org_id", ASCENDING), ("trigger_type", ASCENDING), ("is_active", ASCENDING)])
        await rules.create_index([("priority", DESCENDING)])

        executions = get_automation_executions_collection(db)
        await executions.create_index([("status", ASCENDING), ("scheduled_for", ASCENDING)])
        await executions.create_index([("rule_id", ASCENDING), ("created_at", DESCENDING)])
        await executions.create_index([("contact_id", ASCENDING)])

        # Atomic upserts depend on these unique keys
        cooldowns = get_automation_cooldowns_collection(db)
        await cooldowns.create_index([("rule_id", ASCENDING), ("contact_id", ASCENDING)], unique=True)

        daily_limits = get_daily_limits_collection(db)
        await daily_limits.create_index(
            [("org_id", ASCENDING), ("contact_id", ASCENDING), ("day", ASCENDING)], unique=True
        )

        ab_tests = get_ab_tests_collection(db)
        await ab_tests.create_index([("rule_id", ASCENDING), ("status", ASCENDING)])

        unsubscribes = get_unsubscribes_collection(db)
        await unsubscribes.create_index([("org_id", ASCENDING), ("email", ASCENDING)], unique=True)

        suppressions = get_suppressions_collection(db)
        await suppressions.create_index([("org_id", ASCENDING), ("email", ASCENDING)])

        conversations = get_email_conversations_collection(db)
        await conversations.create_index([("tracking_pixel_id", ASCENDING)], unique=True)
        await conversations.create_index([("unsubscribe_token", ASCENDING)], unique=True)

        activities = get_contact_activities_collection(db)
        await activities.create_index([("contact_id", ASCENDING), ("activity_type", ASCENDING), ("created_at", DESCENDING)])

        contacts = get_contacts_collection(db)
        await contacts.create_index([("org_id", ASCENDING), ("updated_at", ASCENDING)])

        custom_values = get_contact_custom_fields_collection(db)
        await custom_values.create_index([("contact_id", ASCENDING)])

        if db is None:
            _indexes_created = True
        logger.info("✅ Database indexes created successfully")

    except Exception as e:
        # The daily-limit and cooldown upserts are only atomic with the unique indexes in place
        logger.error(f"❌ Failed to create indexes: {e}")
        raise


# ============================================
# HEALTH CHECK FUNCTIONS
# ============================================

async def ping_database() -> bool:
    """Test async database connectivity"""
    try:
        if async_client is None:
            initialize_async_client()
        await async_client.admin.command('ping')
        return True
    except Exception as e:
        logger.error(f"❌ Async database connection failed: {e}")
        return False


async def get_database_info() -> Dict[str, Any]:
    """Get database metadata and statistics"""
    try:
        db = get_async_database()
        db_stats = await db.command("dbStats")
        return {
            "database_name": db.name,
            "collections": db_stats.get("collections", 0),
            "objects": db_stats.get("objects", 0),
            "data_size": db_stats.get("dataSize", 0),
            "indexes": db_stats.get("indexes", 0),
        }
    except Exception as e:
        logger.error(f"Failed to get database info: {e}")
        return {"error": str(e)}


# ============================================
# GRACEFUL SHUTDOWN
# ============================================

def close_async_client():
    """Close async client connections"""
    global async_client, async_database, _async_initialized

    if async_client is not None:
        async_client.close()
        logger.info("🔌 Async MongoDB client closed")

    async_client = None
    async_database = None
    _async_initialized = False
