import logging

import pytest

from commerce_api.common.context import LogContextFilter, log_context
from commerce_api.core import db
from commerce_api.core.config import Settings
from commerce_api.core.logging import configure_logging
from commerce_api.modules.payments import refunds
from commerce_api.modules.payments.utils import encryption


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def _record():
    return logging.LogRecord("commerce_api.test", logging.INFO, __file__, 1, "hello", None, None)


def test_async_database_url():
    settings = Settings(_env_file=None, DATABASE_URL="postgresql://u:p@db/commerce")
    assert settings.async_database_url == "postgresql+asyncpg://u:p@db/commerce"
    assert Settings(_env_file=None).async_database_url is None


def test_log_context_filter():
    log_filter = LogContextFilter()

    with log_context(tenant_id="tenant-1"):
        with log_context(operation_id="op-1"):
            inner = _record()
            log_filter.filter(inner)
        outer = _record()
        log_filter.filter(outer)
    outside = _record()
    log_filter.filter(outside)

    assert (inner.tenant_id, inner.operation_id) == ("tenant-1", "op-1")
    assert (outer.tenant_id, outer.operation_id) == ("tenant-1", "-")
    assert (outside.tenant_id, outside.operation_id) == ("-", "-")


def test_configure_logging(restore_root_logger):
    configure_logging(Settings(_env_file=None, LOG_LEVEL="WARNING"))

    assert restore_root_logger.level == logging.WARNING
    assert logging.getLogger("httpx").level == logging.WARNING
    handler = restore_root_logger.handlers[0]
    assert any(isinstance(f, LogContextFilter) for f in handler.filters)


def test_debug_promotes_default_level(restore_root_logger):
    configure_logging(Settings(_env_file=None, DEBUG=True))

    assert restore_root_logger.level == logging.DEBUG


def test_session_factory_requires_database(monkeypatch):
    monkeypatch.setattr(db, "_SessionLocal", None)
    monkeypatch.setattr(db, "get_settings", lambda: Settings(_env_file=None))

    with pytest.raises(RuntimeError):
        db.get_session_factory()


def test_build_refund_orchestrator(monkeypatch, tmp_path):
    settings = Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite:///{tmp_path}/commerce.sqlite",
        PAYMENT_ENCRYPTION_KEY="0f" * 32,
        GATEWAY_TIMEOUT_SECONDS=2.0,
        REFUND_RATE_LIMIT_MAX_REQUESTS=5,
    )
    monkeypatch.setattr(db, "_engine", None)
    monkeypatch.setattr(db, "_SessionLocal", None)
    monkeypatch.setattr(db, "get_settings", lambda: settings)
    monkeypatch.setattr(encryption, "_vault", None)
    monkeypatch.setattr(encryption, "_vault_key", None)

    orchestrator = refunds.build_refund_orchestrator(settings)

    assert orchestrator.gateway_factory.timeout == 2.0
    assert orchestrator.rate_limiter.max_requests == 5
    assert {"stripe", "paypal", "square"} <= set(orchestrator.gateway_factory.available_gateways())
