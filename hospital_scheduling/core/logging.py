import logging
from contextvars import ContextVar
from .config import settings

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")

def _install_record_factory():
    # attach request_id to every log record (background loops log "-")
    old_factory = logging.getLogRecordFactory()
    if getattr(old_factory, "_request_id_aware", False):
        return
    def record_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        record.request_id = request_id_ctx.get()
        return record
    record_factory._request_id_aware = True
    logging.setLogRecordFactory(record_factory)

def setup_logging():
    _install_record_factory()
    level = logging.DEBUG if settings.ENV == "local" else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s",
    )
