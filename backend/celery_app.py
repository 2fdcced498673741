from celery import Celery
from celery.signals import after_setup_logger, task_failure, worker_ready
from celery.schedules import crontab
import logging
from datetime import timedelta

from core.config import settings

logger = logging.getLogger(__name__)


# ============================================
# CREATE CELERY APP
# ============================================

celery_app = Celery(
    "crm_automation_worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.automation_tasks",
    ]
)

logger.info("✅ Celery app created")


# ============================================
# CELERY CONFIGURATION
# ============================================

celery_app.conf.update(
    # ===== BASIC CONFIGURATION =====
    timezone=settings.CELERY_TIMEZONE,
    enable_utc=True,

    # ===== TASK CONFIGURATION =====
    task_acks_late=False,
    task_reject_on_worker_lost=True,
    task_ignore_result=True,
    task_store_errors_even_if_ignored=True,
    task_time_limit=900,
    task_soft_time_limit=840,

    # ===== WORKER CONFIGURATION =====
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=settings.WORKER_MAX_TASKS_PER_CHILD,
    worker_log_format='[%(asctime)s: %(levelname)s/%(processName)s] %(message)s',
    worker_task_log_format='[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s',

    # ===== BROKER CONFIGURATION =====
    broker_connection_retry_on_startup=True,
    broker_transport_options={
        'visibility_timeout': 3600,
        'socket_keepalive': True,
        'socket_connect_timeout': 5,
    },

    # ===== SERIALIZATION =====
    task_serializer='json',
    result_serializer='json',
    accept_content=['json'],

    # ===== QUEUE CONFIGURATION =====
    task_default_queue='automation',
    task_routes={
        'tasks.process_automation_trigger': {'queue': 'automation', 'priority': 7},
        'tasks.process_due_automations': {'queue': 'automation', 'priority': 5},
        'tasks.scan_automation_time_triggers': {'queue': 'automation', 'priority': 3},
    },
)

logger.info("✅ Celery configuration applied")


# ============================================
# BEAT SCHEDULE (PERIODIC TASKS)
# ============================================

celery_app.conf.beat_schedule = {
    'process-due-automations': {
        'task': 'tasks.process_due_automations',
        'schedule': timedelta(seconds=settings.AUTOMATION_SWEEP_INTERVAL_SECONDS),
        'options': {'queue': 'automation', 'priority': 5}
    },
    'scan-inactive-contacts': {
        'task': 'tasks.scan_automation_time_triggers',
        'schedule': crontab(hour=settings.INACTIVITY_SCAN_HOUR, minute=0),
        'options': {'queue': 'automation', 'priority': 3}
    },
}


# ============================================
# SIGNALS
# ============================================

@after_setup_logger.connect
def setup_celery_logging(logger, *args, **kwargs):
    logger.info(f"📝 Celery logging configured at {settings.LOG_LEVEL}")


@worker_ready.connect
def on_worker_ready(sender=None, **kwargs):
    logger.info(f"🚀 Automation worker ready ({settings.ENVIRONMENT})")


@task_failure.connect
def on_task_failure(sender=None, task_id=None, exception=None, **kwargs):
    task_name = sender.name if sender else "unknown"
    logger.error(f"❌ Task {task_name}[{task_id}] failed: {exception}")
