# timbrado/infrastructure/celery/worker.py
import logging

from celery import Celery

import config

celery_app = Celery(
    'tasks',
    broker=config.CELERY_BROKER_URL,
    backend=None  # Pub/Sub no funciona como backend de resultados.
)

celery_app.conf.update(
    broker_transport_options={
        # Debe cubrir el peor caso: todos los intentos más las esperas entre ellos.
        'visibility_timeout': 600,
        'topic': config.CELERY_PUBSUB_TOPIC,
        'subscription_name_prefix': 'celery-worker-sub'
    },
    task_ignore_result=True
)

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - [%(funcName)s] - %(message)s')

from timbrado.domain.errors import RetriesExhausted
from timbrado.domain.models.fiscal_document import FiscalDocument
from timbrado.infrastructure.dependencies import get_orchestrator


@celery_app.task(name="tasks.stamp_document")
def stamp_document(document_json: str):
    document = FiscalDocument.model_validate_json(document_json)
    logging.info(f"[{document.document_id}] >>> INICIO DE LA TAREA DE TIMBRADO.")
    try:
        outcome = get_orchestrator().stamp(document)
        if outcome.success:
            logging.info(f"[{document.document_id}] ¡ÉXITO! UUID {outcome.stamp.uuid}")
        else:
            logging.warning(f"[{document.document_id}] Terminó en {outcome.state.value}: {outcome.message}")
            if outcome.retryable:
                # Celery registra la tarea como fallida; el reintento es manual
                raise RetriesExhausted(outcome.attempts, outcome.message or "")
    except Exception:
        logging.error(f"[{document.document_id}] ¡ERROR! Se ha capturado una excepción.", exc_info=True)
        raise
    finally:
        logging.info(f"[{document.document_id}] <<< FIN DE LA TAREA.")
