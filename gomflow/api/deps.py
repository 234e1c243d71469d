"""FastAPI dependencies for GOMFLOW core services."""
from gomflow.di.container import container


def get_processor():
    return container.processor()


def get_queue():
    return container.queue()


def get_submission_service():
    return container.submissions()


def get_notifier():
    return container.notifier()


def get_paymongo_client():
    return container.paymongo()


def get_billplz_client():
    return container.billplz()


def workers_running() -> bool:
    return container.workers().running


def get_extraction_settings():
    return container.settings().extraction
