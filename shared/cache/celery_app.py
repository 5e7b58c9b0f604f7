"""
Configuración de Celery para tareas periódicas
Barridos de credenciales y sesiones BLE vencidas
"""
from celery import Celery
from kombu import Queue, Exchange
import os
import logging

from shared.config import settings

logger = logging.getLogger(__name__)

# Configuración de Redis
REDIS_URL = settings.REDIS_URL
REDIS_MAX_CONNECTIONS = int(os.getenv("CELERY_REDIS_MAX_CONNECTIONS", "20"))

# Crear aplicación Celery
celery_app = Celery(
    "festival_validation",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=[
        "services.ticket_validation.tasks.sweep_tasks",
    ]
)

default_exchange = Exchange("default", type="direct")

celery_app.conf.task_queues = (
    Queue("default", default_exchange, routing_key="default"),
    # Mantenimiento: barridos que no deben competir con tareas de usuario
    Queue("maintenance", default_exchange, routing_key="maintenance"),
)

celery_app.conf.task_routes = {
    "sweep_expired_credentials": {"queue": "maintenance"},
    "sweep_expired_proximity_sessions": {"queue": "maintenance"},
}

celery_app.conf.beat_schedule = {
    "sweep-expired-credentials": {
        "task": "sweep_expired_credentials",
        "schedule": 15 * 60,  # cada 15 minutos
    },
    "sweep-expired-proximity-sessions": {
        "task": "sweep_expired_proximity_sessions",
        "schedule": 60,  # cada minuto
    },
}

celery_app.conf.update(
    # Serialización
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    task_track_started=True,

    # Los barridos son cortos; un worker colgado se corta antes
    task_time_limit=5 * 60,
    task_soft_time_limit=4 * 60,

    worker_prefetch_multiplier=1,

    broker_pool_limit=REDIS_MAX_CONNECTIONS,
    redis_max_connections=REDIS_MAX_CONNECTIONS,
    broker_connection_retry_on_startup=True,
    broker_connection_max_retries=10,

    # ACK late: confirmar tarea solo cuando termina
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,

    worker_max_tasks_per_child=1000,

    task_default_queue="default",
    task_default_exchange="default",
    task_default_routing_key="default",
)

logger.info(
    "Celery configurado - Broker: %s, Pool limit: %d",
    REDIS_URL.split("@")[-1] if "@" in REDIS_URL else REDIS_URL,
    REDIS_MAX_CONNECTIONS
)
